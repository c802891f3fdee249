"""Runtime settings resolved from explicit values and the environment."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_GERRIT_URL = "https://review.typo3.org"
DEFAULT_TIMEOUT = 30.0
DEFAULT_LOCK_COMMAND = "composer update --lock"


@dataclass
class Settings:
    """Where the manifest lives, which Gerrit to ask, and how to relock.

    Every field can be overridden explicitly; ``from_env`` fills the rest
    from environment variables the dependency manager itself honours
    (``COMPOSER``, ``COMPOSER_VENDOR_DIR``) plus a few of our own.
    """

    config_file: Path = field(default_factory=lambda: Path("composer.json"))
    vendor_dir: Path | None = None
    gerrit_url: str = DEFAULT_GERRIT_URL
    timeout: float = DEFAULT_TIMEOUT
    lock_command: list[str] = field(default_factory=lambda: shlex.split(DEFAULT_LOCK_COMMAND))

    @property
    def working_dir(self) -> Path:
        return self.config_file.resolve().parent

    @property
    def resolved_vendor_dir(self) -> Path:
        if self.vendor_dir is None:
            return self.working_dir / "vendor"
        if self.vendor_dir.is_absolute():
            return self.vendor_dir
        return self.working_dir / self.vendor_dir

    @classmethod
    def from_env(
        cls,
        config_file: str | Path | None = None,
        gerrit_url: str | None = None,
    ) -> "Settings":
        env = os.environ
        vendor = env.get("COMPOSER_VENDOR_DIR")

        try:
            timeout = float(env.get("CORE_PATCHES_TIMEOUT", DEFAULT_TIMEOUT))
        except ValueError:
            timeout = DEFAULT_TIMEOUT

        return cls(
            config_file=Path(config_file or env.get("COMPOSER") or "composer.json"),
            vendor_dir=Path(vendor) if vendor else None,
            gerrit_url=gerrit_url or env.get("CORE_PATCHES_GERRIT_URL") or DEFAULT_GERRIT_URL,
            timeout=timeout,
            lock_command=shlex.split(env.get("CORE_PATCHES_LOCK_COMMAND") or DEFAULT_LOCK_COMMAND),
        )
