"""Error taxonomy shared by the remote client, the stores and the engine.

Timestamp conflicts are not modelled as errors: the sync engine resolves
them silently with its last-write-wins rule.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by this package."""


class RemoteError(SyncError):
    """The remote service rejected or failed a request.

    Args:
        message: Human-readable description of the failure.
        status_code: HTTP status of the response, when there was one.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailable(RemoteError):
    """Network failure, timeout or 5xx response. Retryable."""


class Unauthorized(RemoteError):
    """The credential was rejected. Not retried by the engine."""


class StorageFailure(SyncError):
    """Local persistence failed; the store degrades to in-memory only."""
