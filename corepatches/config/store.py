"""JSON-backed store for the core-patches registries.

The registries live inside the dependency manager's manifest, next to
whatever else the document holds::

    {
        "extra": {
            "patches": {"typo3/cms-core": ["patches/typo3-cms-core-review-12345.patch"]},
            "core-patches": {
                "applied-changes": {"12345": {"packages": [...], "tests": false, ...}},
                "preferred-install": {"typo3/cms-core": "source"},
                "preferred-install-changed": ["typo3/cms-core"]
            }
        }
    }

``save`` re-reads the document and only replaces these keys, so unrelated
content written by other tools survives. A manifest that exists but does not
parse loads as empty registries and is never overwritten.
"""

from __future__ import annotations

import json
from pathlib import Path

from corepatches.config.models import (
    LATEST_REVISION,
    Change,
    Changes,
    Config,
    Patches,
    PreferredInstall,
    PreferredInstallChanged,
)
from corepatches.errors import ManifestError

EXTRA = "extra"
PATCHES = "patches"
NAMESPACE = "core-patches"
APPLIED_CHANGES = "applied-changes"
PREFERRED_INSTALL = "preferred-install"
PREFERRED_INSTALL_CHANGED = "preferred-install-changed"


class ConfigStore:
    """Loads and saves a ``Config`` from one JSON manifest file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.config = Config()

    def load(self) -> Config:
        """Parse the manifest and return a fresh mutable view of its registries."""
        self.config = _config_from_extra(self._read_extra())
        return self.config

    def save(self) -> None:
        """Write the registries back, leaving the rest of the document untouched.

        Raises:
            ManifestError: If the file exists but is not a JSON object.
        """
        document = self._read_document(strict=True)
        extra = document.get(EXTRA)
        if not isinstance(extra, dict):
            extra = {}

        _apply_config(extra, self.config)

        if extra:
            document[EXTRA] = extra
        else:
            document.pop(EXTRA, None)

        self.path.write_text(
            json.dumps(document, indent=4, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )

    def read_patches(self) -> dict[str, list[str]]:
        """Patch references as currently persisted, bypassing the in-memory view."""
        return _patches_from_extra(self._read_extra()).to_dict()

    def _read_document(self, strict: bool = False) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            if strict:
                raise ManifestError(f"Cannot update {self.path}: {e}") from e
            return {}
        if not isinstance(data, dict):
            if strict:
                raise ManifestError(f"Cannot update {self.path}: the document is not a JSON object")
            return {}
        return data

    def _read_extra(self) -> dict:
        extra = self._read_document().get(EXTRA)
        return extra if isinstance(extra, dict) else {}


def _config_from_extra(extra: dict) -> Config:
    namespace = extra.get(NAMESPACE)
    if not isinstance(namespace, dict):
        namespace = {}

    return Config(
        patches=_patches_from_extra(extra),
        changes=_changes_from_dict(namespace.get(APPLIED_CHANGES)),
        preferred_install=PreferredInstall(
            {
                str(k): str(v)
                for k, v in _as_dict(namespace.get(PREFERRED_INSTALL)).items()
            }
        ),
        preferred_install_changed=PreferredInstallChanged(
            [str(p) for p in namespace.get(PREFERRED_INSTALL_CHANGED) or [] if isinstance(p, str)]
        ),
    )


def _patches_from_extra(extra: dict) -> Patches:
    patches: dict[str, list[str]] = {}
    for package, references in _as_dict(extra.get(PATCHES)).items():
        # composer-patches also accepts {"description": "path"} maps
        if isinstance(references, dict):
            references = list(references.values())
        if isinstance(references, list):
            patches[str(package)] = [str(r) for r in references if isinstance(r, str)]
    return Patches(patches)


def _changes_from_dict(data) -> Changes:
    changes = []
    for key, value in _as_dict(data).items():
        try:
            number = int(key)
        except (TypeError, ValueError):
            continue
        value = _as_dict(value)
        changes.append(
            Change(
                number=number,
                packages=[str(p) for p in value.get("packages", []) if isinstance(p, str)],
                tests=bool(value.get("tests", False)),
                patch_directory=str(value.get("patch-directory", "")),
                revision=_as_int(value.get("revision"), LATEST_REVISION),
            )
        )
    return Changes(changes)


def _as_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _change_to_dict(change: Change) -> dict:
    return {
        "packages": change.packages,
        "tests": change.tests,
        "patch-directory": change.patch_directory,
        "revision": change.revision,
    }


def _apply_config(extra: dict, config: Config) -> None:
    """Write the registries into ``extra``; empty registries are dropped."""
    _set_or_drop(extra, PATCHES, config.patches.to_dict())

    namespace = extra.get(NAMESPACE)
    if not isinstance(namespace, dict):
        namespace = {}

    _set_or_drop(
        namespace,
        APPLIED_CHANGES,
        {str(c.number): _change_to_dict(c) for c in config.changes},
    )
    _set_or_drop(namespace, PREFERRED_INSTALL, config.preferred_install.to_dict())
    _set_or_drop(namespace, PREFERRED_INSTALL_CHANGED, config.preferred_install_changed.to_list())

    _set_or_drop(extra, NAMESPACE, namespace)


def _set_or_drop(target: dict, key: str, value) -> None:
    if value:
        target[key] = value
    else:
        target.pop(key, None)


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}
