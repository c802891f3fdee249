"""Gerrit review service access."""

from corepatches.gerrit.client import GerritClient, IncludedIn, ReviewService

__all__ = ["GerritClient", "IncludedIn", "ReviewService"]
