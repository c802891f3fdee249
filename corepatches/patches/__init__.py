"""Patch files: creation from review diffs and lookup by change number."""

from corepatches.patches.materializer import (
    DEFAULT_RULES,
    Materializer,
    PackageRule,
    PatchMaterializer,
)

__all__ = ["DEFAULT_RULES", "Materializer", "PackageRule", "PatchMaterializer"]
