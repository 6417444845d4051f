"""
Error taxonomy for the synchronizer.

Errors are returned as values across the core boundary, never raised:

    result = await api.list_recordings(channel_id, 5)
    if isinstance(result, SyncError):
        ...
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every error value produced by the synchronizer."""


class UpstreamError(SyncError):
    """Network or Twitch API failure. Retried via backoff, never fatal."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ValidationError(UpstreamError):
    """Malformed upstream payload. Handled like any other upstream failure."""


class NotAuthenticated(SyncError):
    """Missing or rejected credential. Surfaced to the caller, not retried."""


class StoreError(SyncError):
    """Database transaction failure. Retried by the coalescer."""

