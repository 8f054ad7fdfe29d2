"""Exception hierarchy for the health sync engine.

Source reads raise ``PermissionDenied`` (fatal, never retried) or
``SourceUnavailable`` (transient).  Store writes raise
``TransientStoreError`` when the backend is contended or unreachable.
``VerificationMismatch`` is raised when a read-back does not match what
was just written.
"""

from __future__ import annotations


class HealthSyncError(Exception):
    """Base class for all sync engine errors."""


class SourceError(HealthSyncError):
    """A source adapter could not complete a read."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class PermissionDenied(SourceError):
    """The user has not granted the permission a read requires."""


class SourceUnavailable(SourceError):
    """The upstream provider failed transiently (network, 5xx, rate limit)."""


class StoreError(HealthSyncError):
    """The document store rejected an operation."""


class TransientStoreError(StoreError):
    """A write failed for a reason that may clear on retry."""


class VerificationMismatch(HealthSyncError):
    """A written document did not read back with the expected values."""

    def __init__(self, path: str, expected: dict, actual: dict | None) -> None:
        super().__init__(
            f"Read-back mismatch at {path}: expected {expected}, got {actual}"
        )
        self.path = path
        self.expected = expected
        self.actual = actual
