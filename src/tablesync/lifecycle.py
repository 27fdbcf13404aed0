"""Channel subscription lifecycle tied to snapshot observers.

The first observer joins the change feed (and the broadcast channel, when
coalescing is configured). When the last observer leaves, or the host calls
:meth:`LifecycleController.teardown` on shutdown, pending writes are drained
before the channels are left.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from tablesync.channels import BroadcastChannel, ChangeFeed, is_active
from tablesync.models import RowKey, SubscribeStatus
from tablesync.mutations.drain import PendingWriteDrain
from tablesync.state.snapshot import Snapshot

_logger = logging.getLogger(__name__)


class LifecycleController:
    """Joins and leaves the realtime channels as snapshot observers come and go."""

    def __init__(
        self,
        snapshot: Snapshot,
        drain: PendingWriteDrain,
        *,
        feed: ChangeFeed,
        broadcast: BroadcastChannel | None = None,
        on_ready: Callable[[], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._snapshot = snapshot
        self._drain = drain
        self._feed = feed
        self._broadcast = broadcast
        self._on_ready = on_ready
        self._loop = loop
        self._ready = False
        self._teardowns: set[asyncio.Task[list[RowKey]]] = set()
        snapshot.bind_lifecycle(self.activate, self.deactivate)

    @property
    def ready(self) -> bool:
        """Whether the broadcast channel has reported ``SUBSCRIBED`` at least once."""
        return self._ready

    def activate(self) -> None:
        """Join the channels that are not already joined or joining."""
        if not is_active(self._feed):
            _logger.debug("Subscribing change feed")
            self._feed.subscribe()
        if self._broadcast is not None and not is_active(self._broadcast):
            _logger.debug("Subscribing broadcast channel")
            self._broadcast.subscribe(self._on_broadcast_status)

    def _on_broadcast_status(self, status: SubscribeStatus) -> None:
        _logger.debug("Broadcast channel status %s", status)
        if status != SubscribeStatus.SUBSCRIBED or self._ready:
            return
        self._ready = True
        if self._on_ready is None:
            return
        try:
            self._on_ready()
        except Exception:
            _logger.warning("on_ready callback failed", exc_info=True)

    def deactivate(self) -> None:
        """Schedule a teardown after the last observer left."""
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                _logger.warning("No event loop to tear down channels; call close() to release them")
                return
        task = loop.create_task(self.teardown())
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    async def teardown(self, *, force: bool = False) -> list[RowKey]:
        """Drain pending writes, then leave the channels.

        Without *force* the channels are kept when an observer re-attached
        while the drain was running. Returns the keys the drain saved.
        """
        self._drain.cancel_scheduled()
        saved = await self._drain.flush_all()
        if len(self._drain):
            _logger.warning("%d pending write(s) could not be saved before teardown", len(self._drain))

        if not force and self._snapshot.observer_count:
            _logger.debug("Observers re-attached during teardown; keeping channels")
            return saved

        self._feed.unsubscribe()
        if self._broadcast is not None:
            self._broadcast.unsubscribe()
        return saved

    async def wait_closed(self) -> None:
        """Wait for teardowns scheduled by :meth:`deactivate`."""
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns))
