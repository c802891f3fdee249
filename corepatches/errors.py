"""Exception taxonomy for core-patches.

Review-service errors and ``NoPatchError`` are recoverable per change id:
the lifecycle manager warns and moves on to the next id. Only
``CommandExecutionError`` is fatal and always reaches the caller.
"""

from __future__ import annotations


class CorePatchesError(Exception):
    """Base exception for core-patches errors."""


# --- Review service ---


class ReviewServiceError(CorePatchesError):
    """The review service could not deliver usable data for a change."""


class UnexpectedResponseError(ReviewServiceError):
    """The review service answered with an unexpected status, or not at all."""


class InvalidResponseError(ReviewServiceError):
    """The review service body could not be decoded."""


class UnexpectedValueError(ReviewServiceError):
    """A decoded response is missing a field or has the wrong type."""


# --- Manifest ---


class ManifestError(CorePatchesError):
    """The manifest exists but cannot be parsed, so it must not be rewritten."""


# --- Patches ---


class NoPatchError(CorePatchesError):
    """A change produced no applicable patch file."""


# --- Delegated commands ---


class CommandExecutionError(CorePatchesError):
    """A delegated command exited with a non-zero code."""

    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.code = code
