"""Local installed-package repository.

Reads the dependency manager's ``vendor/composer/installed.json`` and removes
packages from disk so the next install step fetches them again. Uninstalls
run on a thread pool; each returns a ``Future`` and callers block once per
batch through ``wait_all``.
"""

from __future__ import annotations

import json
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

INSTALLED_FILE = Path("composer") / "installed.json"


@dataclass(frozen=True)
class InstalledPackage:
    """A package present in the local repository."""

    name: str
    version: str
    install_path: str = ""


class Installer(Protocol):
    def list_installed_packages(self) -> list[InstalledPackage]: ...

    def uninstall(self, package: InstalledPackage) -> Future: ...

    def wait_all(self, handles: Iterable[Future]) -> None: ...


class LocalRepository:
    """Installed packages of one vendor directory."""

    def __init__(self, vendor_dir: str | Path, max_workers: int = 4):
        self.vendor_dir = Path(vendor_dir)
        self.installed_path = self.vendor_dir / INSTALLED_FILE
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="uninstall")
        self._lock = threading.Lock()
        self._removed: set[str] = set()

    def list_installed_packages(self) -> list[InstalledPackage]:
        packages = []
        for data in self._read_entries():
            name = data.get("name")
            if not isinstance(name, str) or name in self._removed:
                continue
            packages.append(
                InstalledPackage(
                    name=name,
                    version=str(data.get("version_normalized") or data.get("version") or ""),
                    install_path=str(data.get("install-path", "")),
                )
            )
        return packages

    def uninstall(self, package: InstalledPackage) -> Future:
        """Schedule removal of a package's files; returns a completion handle."""
        return self._executor.submit(self._uninstall, package)

    def wait_all(self, handles: Iterable[Future]) -> None:
        """Block until every handle finished, then persist the repository.

        The first failure among the handles is re-raised after all of them
        completed.
        """
        handles = [h for h in handles if h is not None]
        if not handles:
            return

        wait(handles)
        self._write_entries()

        for handle in handles:
            error = handle.exception()
            if error is not None:
                raise error

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "LocalRepository":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- internals -----------------------------------------------------------

    def _uninstall(self, package: InstalledPackage) -> str:
        target = self._install_dir(package)
        if target.exists():
            shutil.rmtree(target)
        with self._lock:
            self._removed.add(package.name)
        return package.name

    def _install_dir(self, package: InstalledPackage) -> Path:
        if package.install_path:
            # install-path is relative to vendor/composer
            return (self.installed_path.parent / package.install_path).resolve()
        return self.vendor_dir / package.name

    def _read_document(self):
        if not self.installed_path.exists():
            return []
        try:
            return json.loads(self.installed_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return []

    def _read_entries(self) -> list[dict]:
        document = self._read_document()
        # Composer 2 wraps the list, Composer 1 writes it bare
        entries = document.get("packages", []) if isinstance(document, dict) else document
        if not isinstance(entries, list):
            return []
        return [e for e in entries if isinstance(e, dict)]

    def _write_entries(self) -> None:
        with self._lock:
            removed = set(self._removed)
        if not removed or not self.installed_path.exists():
            return

        document = self._read_document()
        if isinstance(document, dict):
            document["packages"] = [
                e for e in self._read_entries() if e.get("name") not in removed
            ]
            dev_names = document.get("dev-package-names")
            if isinstance(dev_names, list):
                document["dev-package-names"] = [n for n in dev_names if n not in removed]
        else:
            document = [e for e in self._read_entries() if e.get("name") not in removed]

        self.installed_path.write_text(
            json.dumps(document, indent=4, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
