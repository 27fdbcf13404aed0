"""Custom exception hierarchy for tablesync.

Only programmer errors and configuration problems raise. Ordinary remote
failures are returned as :class:`tablesync.models.RemoteError` values.
"""

from __future__ import annotations


class TableSyncError(Exception):
    """Base exception for all tablesync errors."""


class TableSyncConfigError(TableSyncError):
    """Invalid or missing configuration."""


class InvalidKeyError(TableSyncError, ValueError):
    """A mutation was requested without a usable index key."""

    def __init__(self, message: str, *, key: object = None) -> None:
        self.key = key
        super().__init__(message)


class ChannelError(TableSyncError):
    """A realtime channel could not be set up or used.

    Raised for misuse (e.g. sending on a channel that was never bound to a
    running event loop), never for delivery failures, which are reported
    through :class:`tablesync.models.SendResult`.
    """

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)
