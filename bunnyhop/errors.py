from __future__ import annotations


class BunnyHopError(Exception):
    """Base class for every failure the scoring engine reports."""


class AuthError(BunnyHopError):
    """Credential is expired or invalid and cannot be recovered without signing in again."""


class UpstreamError(BunnyHopError):
    """Strava could not be reached or answered with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(BunnyHopError):
    """No persisted result exists for the requested rider."""


class ValidationError(BunnyHopError):
    """An upstream payload did not have the expected shape."""


class SyncInProgressError(BunnyHopError):
    """Another sync for the same rider currently holds the rider lock."""


class SyncCancelledError(BunnyHopError):
    """The sync was cancelled before it could persist a result."""


class StorageBusyError(BunnyHopError):
    """The store's single-writer lock could not be acquired in time."""


class StorageCorruptError(BunnyHopError):
    """A stored document exists but cannot be parsed, so it must not be rewritten."""
