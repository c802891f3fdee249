"""Registry models kept in the manifest's ``extra`` section.

Four registries describe the applied state:

- ``Patches``: package name -> ordered patch file references
- ``Changes``: numeric change id -> ``Change`` (what the change produced)
- ``PreferredInstall``: package name -> install method
- ``PreferredInstallChanged``: packages whose ``source`` mode we set

All mutations are in memory; ``ConfigStore.save`` writes them out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

LATEST_REVISION = -1


@dataclass
class Change:
    """A review change that has contributed patches."""

    number: int
    packages: list[str] = field(default_factory=list)
    tests: bool = False
    patch_directory: str = ""
    revision: int = LATEST_REVISION


class Patches:
    """Package name -> ordered set of patch file references."""

    def __init__(self, data: dict[str, list[str]] | None = None):
        self._patches: dict[str, list[str]] = {}
        for package, references in (data or {}).items():
            self.add(package, references)

    def has(self, package: str) -> bool:
        return package in self._patches

    def get(self, package: str) -> list[str]:
        return list(self._patches.get(package, []))

    def add(self, package: str, references: list[str]) -> None:
        current = self._patches.setdefault(package, [])
        for reference in references:
            if reference not in current:
                current.append(reference)
        if not current:
            del self._patches[package]

    def remove(self, package: str, references: list[str]) -> list[str]:
        """Drop references for a package; returns the ones that were present."""
        current = self._patches.get(package)
        if current is None:
            return []

        removed = [r for r in current if r in references]
        remaining = [r for r in current if r not in references]
        if remaining:
            self._patches[package] = remaining
        else:
            del self._patches[package]
        return removed

    def packages(self) -> list[str]:
        return list(self._patches)

    def to_dict(self) -> dict[str, list[str]]:
        return {package: list(refs) for package, refs in self._patches.items()}

    def __len__(self) -> int:
        return len(self._patches)

    def __bool__(self) -> bool:
        return bool(self._patches)


class Changes:
    """Numeric change id -> applied ``Change``; iterates in insertion order."""

    def __init__(self, changes: list[Change] | None = None):
        self._changes: dict[int, Change] = {c.number: c for c in changes or []}

    def has(self, number: int) -> bool:
        return number in self._changes

    def get(self, number: int) -> Change | None:
        return self._changes.get(number)

    def add(
        self,
        number: int,
        packages: list[str],
        tests: bool = False,
        patch_directory: str = "",
        revision: int = LATEST_REVISION,
    ) -> Change:
        change = Change(
            number=number,
            packages=list(dict.fromkeys(packages)),
            tests=tests,
            patch_directory=patch_directory,
            revision=revision,
        )
        self._changes[number] = change
        return change

    def remove(self, number: int) -> None:
        self._changes.pop(number, None)

    def numbers(self) -> list[int]:
        return list(self._changes)

    def __iter__(self) -> Iterator[Change]:
        return iter(list(self._changes.values()))

    def __len__(self) -> int:
        return len(self._changes)


class PreferredInstall:
    """Package name -> install method (``source``, ``dist``, ``auto``)."""

    METHOD_SOURCE = "source"
    METHOD_DIST = "dist"
    METHOD_AUTO = "auto"

    def __init__(self, data: dict[str, str] | None = None):
        self._methods: dict[str, str] = dict(data or {})

    def has(self, package: str, method: str | None = None) -> bool:
        if package not in self._methods:
            return False
        return method is None or self._methods[package] == method

    def get(self, package: str) -> str | None:
        return self._methods.get(package)

    def add(self, package: str, method: str) -> None:
        self._methods[package] = method

    def remove(self, package: str) -> None:
        self._methods.pop(package, None)

    def to_dict(self) -> dict[str, str]:
        return dict(self._methods)

    def __len__(self) -> int:
        return len(self._methods)


class PreferredInstallChanged:
    """Packages whose ``source`` install mode was set by core-patches."""

    def __init__(self, packages: list[str] | None = None):
        self._packages: set[str] = set(packages or [])

    def has(self, package: str) -> bool:
        return package in self._packages

    def add(self, package: str) -> None:
        self._packages.add(package)

    def remove(self, package: str) -> None:
        self._packages.discard(package)

    def to_list(self) -> list[str]:
        return sorted(self._packages)

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_list())

    def __len__(self) -> int:
        return len(self._packages)


@dataclass
class Config:
    """Mutable view over the four registries of one manifest."""

    patches: Patches = field(default_factory=Patches)
    changes: Changes = field(default_factory=Changes)
    preferred_install: PreferredInstall = field(default_factory=PreferredInstall)
    preferred_install_changed: PreferredInstallChanged = field(default_factory=PreferredInstallChanged)
