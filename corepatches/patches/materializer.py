"""Patch materializer: turn a review diff into per-package patch files.

A Gerrit change touches a monorepo (``typo3/sysext/<ext>/...``), but the
installed artifacts are individual packages (``typo3/cms-<ext>``). The diff
is split per file, every file is assigned to a package by a ``PackageRule``,
paths are rewritten relative to the package root, and one patch file per
package is written to the destination directory::

    patches/typo3-cms-core-review-12345.patch

The change number is encoded in the file name, which is how a patch file is
later matched back to the change it came from.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Protocol

from corepatches.errors import NoPatchError

_DIFF_HEADER = "diff --git "
# identical paths first, so names containing " b/" still split correctly
_SAME_PATH_HEADER_RE = re.compile(r"^diff --git a/(?P<a>.+) b/(?P<b>(?P=a))$")
_DIFF_HEADER_RE = re.compile(r"^diff --git a/(?P<a>.+?) b/(?P<b>.+)$")
# git format-patch signature: "-- " followed by the git version
_SIGNATURE_RE = re.compile(r"\n-- ?\n[^\n]*\n*\Z")
_PATH_LINE_PREFIXES = ("--- a/", "+++ b/", "rename from ", "rename to ", "copy from ", "copy to ")

TESTS_DIRECTORY = "Tests/"


@dataclass
class PackageRule:
    """Maps monorepo paths under a prefix to a package name.

    ``pattern`` must match from the start of the path and expose a ``name``
    group; the whole match is stripped from paths inside the patch.
    """

    pattern: str
    package: str
    replace_underscores: bool = True

    def match(self, path: str) -> tuple[str, str] | None:
        """Return ``(package, path relative to the package)`` or None."""
        m = re.match(self.pattern, path)
        if not m:
            return None
        name = m.group("name")
        if self.replace_underscores:
            name = name.replace("_", "-")
        return self.package.format(name=name), path[m.end():]


DEFAULT_RULES = [
    PackageRule(pattern=r"typo3/sysext/(?P<name>[^/]+)/", package="typo3/cms-{name}"),
]


@dataclass
class _FileDiff:
    package: str
    relative_path: str
    prefix: str
    lines: list[str] = field(default_factory=list)


class Materializer(Protocol):
    def create(
        self,
        numeric_id: int,
        subject: str,
        diff: bytes,
        destination: str,
        include_tests: bool,
    ) -> dict[str, list[str]]: ...

    def remove(self, numeric_ids: list[int], patches: dict[str, list[str]]) -> dict[str, list[str]]: ...

    def prepare_remove(
        self, numeric_ids: list[int], patches: dict[str, list[str]]
    ) -> dict[str, list[str]]: ...

    def patch_is_part_of_change(self, reference: str, change_id: int) -> bool: ...


class PatchMaterializer:
    """Writes and locates per-package patch files for review changes."""

    def __init__(self, base_dir: str | Path | None = None, rules: list[PackageRule] | None = None):
        """Initialize the materializer.

        Args:
            base_dir: Directory relative patch references are resolved against
                      (the manifest's directory). Defaults to the CWD.
            rules: Package rules, tried in order. Defaults to the TYPO3 layout.
        """
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.rules = rules if rules is not None else list(DEFAULT_RULES)

    # -- creation ------------------------------------------------------------

    def create(
        self,
        numeric_id: int,
        subject: str,
        diff: bytes,
        destination: str,
        include_tests: bool,
    ) -> dict[str, list[str]]:
        """Split ``diff`` into one patch file per package and write them.

        Raises:
            NoPatchError: If no file of the diff maps to a package.
        """
        # bytes that are not UTF-8 must reach the patch file unchanged
        text = diff.decode("utf-8", errors="surrogateescape")
        per_package: dict[str, list[_FileDiff]] = {}

        for file_diff in self._split(text):
            if not include_tests and file_diff.relative_path.startswith(TESTS_DIRECTORY):
                continue
            per_package.setdefault(file_diff.package, []).append(file_diff)

        if not per_package:
            raise NoPatchError(f"Change {numeric_id} does not touch any known package")

        created: dict[str, list[str]] = {}
        for package, file_diffs in per_package.items():
            reference = self._reference(destination, package, numeric_id)
            target = self._resolve(reference)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(
                _render(numeric_id, subject, file_diffs),
                encoding="utf-8",
                errors="surrogateescape",
            )
            created[package] = [reference]

        return created

    def _split(self, text: str) -> list[_FileDiff]:
        text = _SIGNATURE_RE.sub("\n", text)
        file_diffs: list[_FileDiff] = []
        current: _FileDiff | None = None

        for line in text.splitlines():
            if line.startswith(_DIFF_HEADER):
                # files outside every package are dropped with their hunks
                header = _SAME_PATH_HEADER_RE.match(line) or _DIFF_HEADER_RE.match(line)
                current = None
                if header:
                    current = self._assign(header.group("b")) or self._assign(header.group("a"))
                if current is not None:
                    file_diffs.append(current)
            if current is None:
                continue
            current.lines.append(_strip_prefix(line, current.prefix))

        return file_diffs

    def _assign(self, path: str) -> _FileDiff | None:
        for rule in self.rules:
            matched = rule.match(path)
            if matched:
                package, relative = matched
                return _FileDiff(
                    package=package,
                    relative_path=relative,
                    prefix=path[: len(path) - len(relative)],
                )
        return None

    # -- removal -------------------------------------------------------------

    def remove(self, numeric_ids: list[int], patches: dict[str, list[str]]) -> dict[str, list[str]]:
        """Delete the patch files of the given changes; returns what was selected."""
        to_remove = self.prepare_remove(numeric_ids, patches)
        for references in to_remove.values():
            for reference in references:
                self._resolve(reference).unlink(missing_ok=True)
        return to_remove

    def prepare_remove(
        self, numeric_ids: list[int], patches: dict[str, list[str]]
    ) -> dict[str, list[str]]:
        """Select the patch references of the given changes without touching disk."""
        selected: dict[str, list[str]] = {}
        for package, references in patches.items():
            matching = [
                r for r in references
                if any(self.patch_is_part_of_change(r, n) for n in numeric_ids)
            ]
            if matching:
                selected[package] = matching
        return selected

    def patch_is_part_of_change(self, reference: str, change_id: int) -> bool:
        return PurePosixPath(reference).name.endswith(f"-review-{int(change_id)}.patch")

    # -- paths ---------------------------------------------------------------

    def _reference(self, destination: str, package: str, numeric_id: int) -> str:
        filename = f"{package.replace('/', '-')}-review-{numeric_id}.patch"
        destination = destination.strip().rstrip("/")
        return f"{destination}/{filename}" if destination else filename

    def _resolve(self, reference: str) -> Path:
        path = Path(reference)
        return path if path.is_absolute() else self.base_dir / path


def _strip_prefix(line: str, prefix: str) -> str:
    if line.startswith(_DIFF_HEADER):
        return line.replace(f"a/{prefix}", "a/", 1).replace(f"b/{prefix}", "b/", 1)
    for start in _PATH_LINE_PREFIXES:
        if line.startswith(start + prefix):
            return start + line[len(start) + len(prefix):]
    return line


def _render(numeric_id: int, subject: str, file_diffs: list[_FileDiff]) -> str:
    lines = [
        f"From {numeric_id}",
        f"Subject: [PATCH] {subject}",
        "",
    ]
    for file_diff in file_diffs:
        lines.extend(file_diff.lines)
    return "\n".join(lines) + "\n"
