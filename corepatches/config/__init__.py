"""Config store: typed registries persisted in the manifest's ``extra`` section."""

from corepatches.config.models import (
    Change,
    Changes,
    Config,
    Patches,
    PreferredInstall,
    PreferredInstallChanged,
)
from corepatches.config.store import ConfigStore

__all__ = [
    "Change",
    "Changes",
    "Config",
    "ConfigStore",
    "Patches",
    "PreferredInstall",
    "PreferredInstallChanged",
]
