"""Decide per mutation whether to write through or buffer locally.

Inserts and deletes always go straight to the remote table. Updates are
coalesced while a window is configured and the broadcast channel is
joined: an update issued less than one window after the previous
written-through update is applied to the local snapshot, relayed to peers
and left for :class:`~tablesync.mutations.drain.PendingWriteDrain`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from tablesync._transport import RemoteTable
from tablesync.channels import BroadcastChannel
from tablesync.config import TableStoreConfig
from tablesync.exceptions import InvalidKeyError
from tablesync.models import ChannelState, RemoteError, Row, RowKey, SendResult
from tablesync.mutations.drain import PendingWriteDrain
from tablesync.state.snapshot import Snapshot

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _require_key(key: RowKey | None) -> RowKey:
    if key is None or key == "":
        raise InvalidKeyError("No key provided", key=key)
    return key


class MutationCoalescer:
    """Entry point for ``add``/``remove``/``mutate`` on one table."""

    def __init__(
        self,
        config: TableStoreConfig,
        *,
        remote: RemoteTable,
        snapshot: Snapshot,
        drain: PendingWriteDrain,
        broadcast: BroadcastChannel | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._remote = remote
        self._snapshot = snapshot
        self._drain = drain
        self._broadcast = broadcast
        self._clock = clock
        self._sleep = sleep
        self._window: timedelta | None = config.coalescing_window
        self._last_mutate: datetime | None = None

    @property
    def last_mutate(self) -> datetime | None:
        """When the last coalescing-eligible update was written through."""
        return self._last_mutate

    def _broadcast_joined(self) -> bool:
        return self._broadcast is not None and self._broadcast.state == ChannelState.JOINED

    # ------------------------------------------------------------------
    # Write-through operations
    # ------------------------------------------------------------------

    async def add(self, row: Row) -> RemoteError | None:
        """Insert *row* into the remote table."""
        return await self._remote.insert(self._config.table_name, row)

    async def remove(self, key: RowKey) -> RemoteError | None:
        """Delete the row with *key* from the remote table."""
        return await self._remote.delete(self._config.table_name, self._config.index_name, key)

    async def mutate(self, key: RowKey, patch: Row) -> RemoteError | None:
        """Update the row with *key*, possibly deferring the remote write.

        Returns ``None`` on success (including a deferred write) or the
        remote error of an immediate write.

        Raises
        ------
        InvalidKeyError
            If *key* is ``None`` or empty. Nothing is written in that case.
        """
        key = _require_key(key)

        if self._window is not None and self._broadcast_joined():
            now = self._clock()
            if self._last_mutate is not None and now - self._last_mutate < self._window:
                await self._coalesce(key, patch, now, remaining=self._window - (now - self._last_mutate))
                return None
            self._last_mutate = now

        return await self._write_through(key, patch)

    async def _write_through(self, key: RowKey, patch: Row) -> RemoteError | None:
        # Fold into the buffered edits so the drain writes both and the direct
        # update below becomes redundant.
        if key in self._drain and key in self._snapshot:
            self._drain.queue(key, patch, queued_at=self._clock())
            self._snapshot.upsert({**patch, self._config.index_name: key}, merge=True)

        saved = await self._drain.flush_all()
        if key in saved:
            return None
        return await self._remote.update(self._config.table_name, self._config.index_name, key, patch)

    # ------------------------------------------------------------------
    # Coalesced path
    # ------------------------------------------------------------------

    async def _coalesce(self, key: RowKey, patch: Row, now: datetime, *, remaining: timedelta) -> None:
        entry = {**patch, self._config.index_name: key}
        self._snapshot.upsert(entry, merge=True)
        self._drain.queue(key, patch, queued_at=now)
        self._drain.schedule_flush(remaining.total_seconds())

        await self._send_broadcast(entry)

    async def _send_broadcast(self, entry: Row) -> None:
        broadcast = self._broadcast
        if broadcast is None:
            return
        event = self._config.broadcast_event
        attempts = self._config.broadcast_max_attempts
        for attempt in range(1, attempts + 1):
            result = await broadcast.send(event, entry)
            if result == SendResult.OK:
                return
            _logger.debug("Broadcast attempt %d/%d for %s returned %s", attempt, attempts, event, result)
            if attempt < attempts:
                await self._sleep(self._config.broadcast_retry_delay)
        _logger.warning(
            "Broadcast of %s for %s=%s gave up after %d attempts",
            event,
            self._config.index_name,
            entry.get(self._config.index_name),
            attempts,
        )

    def receive_broadcast(self, payload: Row) -> None:
        """Apply a peer's coalesced edit locally without relaying or queueing it."""
        key = self._snapshot.key_of(payload)
        if key is None:
            _logger.error("Index %s not found in broadcast payload", self._config.index_name)
            return
        self._snapshot.upsert(payload, merge=True)
