"""Patch lifecycle: reconcile review changes, registries and installed packages."""

from corepatches.lifecycle.manager import ChangeOutcome, PatchLifecycleManager
from corepatches.lifecycle.obsolescence import find_inclusion, satisfies_branch, satisfies_tag

__all__ = [
    "ChangeOutcome",
    "PatchLifecycleManager",
    "find_inclusion",
    "satisfies_branch",
    "satisfies_tag",
]
