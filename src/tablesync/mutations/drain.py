"""Write buffered edits back to the remote table.

A pending key is flushed with the row's *current* snapshot state (minus the
index column) with its buffered edits laid on top, so every edit made since
it was queued is written in one update. Buffered edits for the same key
accumulate. Failed keys stay pending for the next trigger.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime

from tablesync._transport import RemoteTable
from tablesync.models import Row, RowKey
from tablesync.state.events import PendingMutation
from tablesync.state.snapshot import Snapshot

_logger = logging.getLogger(__name__)


class PendingWriteDrain:
    """Pending-write set plus the flush that empties it.

    Flushes are serialised: a flush requested while another is running
    waits for it and then drains whatever is still pending.
    """

    def __init__(self, remote: RemoteTable, snapshot: Snapshot, *, table_name: str) -> None:
        self._remote = remote
        self._snapshot = snapshot
        self._table_name = table_name
        self._pending: dict[RowKey, PendingMutation] = {}
        self._lock = asyncio.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._scheduled: set[asyncio.Task[list[RowKey]]] = set()

    @property
    def pending(self) -> Mapping[RowKey, PendingMutation]:
        return dict(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def queue(self, key: RowKey, payload: Row, queued_at: datetime) -> PendingMutation:
        """Record *key* as pending, merging *payload* into any earlier entry for it."""
        earlier = self._pending.get(key)
        if earlier is not None:
            payload = {**earlier.payload, **payload}
            queued_at = earlier.queued_at
        mutation = PendingMutation(key=key, payload=dict(payload), queued_at=queued_at)
        self._pending[key] = mutation
        return mutation

    def overlay(self, row: Row) -> Row:
        """Return *row* with the buffered edits for its key applied on top."""
        mutation = self._pending.get(row.get(self._snapshot.index_name))
        if mutation is None:
            return row
        return {**row, **mutation.payload}

    async def flush_all(self) -> list[RowKey]:
        """Write every pending key and return the keys that were saved."""
        async with self._lock:
            if not self._pending:
                return []

            index_name = self._snapshot.index_name
            flushed: list[RowKey] = []
            for key, mutation in list(self._pending.items()):
                row = self._snapshot.find(key)
                if row is None:
                    _logger.debug("Dropping pending write for %s=%s: row no longer exists", index_name, key)
                    self._discard(key, mutation)
                    continue

                # The row may have been overwritten by a stale echo since the edit was queued.
                merged = {**row, **mutation.payload}
                patch = {column: value for column, value in merged.items() if column != index_name}
                error = await self._remote.update(self._table_name, index_name, key, patch)
                if error is not None:
                    _logger.warning(
                        "Deferred write to %s for %s=%s failed, keeping it pending: %s",
                        self._table_name,
                        index_name,
                        key,
                        error,
                    )
                    continue

                flushed.append(key)
                # A newer edit queued while the update was in flight stays pending.
                self._discard(key, mutation)

            if flushed:
                _logger.debug("Flushed %d pending write(s) to %s", len(flushed), self._table_name)
            return flushed

    def _discard(self, key: RowKey, mutation: PendingMutation) -> None:
        if self._pending.get(key) is mutation:
            del self._pending[key]

    # ------------------------------------------------------------------
    # Timed flush
    # ------------------------------------------------------------------

    def schedule_flush(self, delay: float) -> None:
        """Flush once after *delay* seconds unless a flush is already scheduled."""
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(delay, 0.0), self._on_timer)

    def cancel_scheduled(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if not self._pending:
            return
        task = asyncio.get_running_loop().create_task(self.flush_all())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
