"""Realtime table store.

A :class:`TableStore` keeps an ordered list of rows in sync with one remote
table through its change feed, and optionally coalesces rapid updates into
deferred writes relayed to peer sessions over a broadcast channel.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import aiohttp

from tablesync._mqtt import MqttBootstrap, MqttBroadcastChannel, MqttChangeFeed, MqttRuntime
from tablesync._transport import RemoteTable, RestTableClient
from tablesync.channels import BroadcastChannel, ChangeFeed
from tablesync.config import ConnectionConfig, TableStoreConfig
from tablesync.lifecycle import LifecycleController
from tablesync.models import RemoteError, Row, RowKey
from tablesync.mutations.coalescer import MutationCoalescer
from tablesync.mutations.drain import PendingWriteDrain
from tablesync.state.applier import ChangeApplier
from tablesync.state.snapshot import Observer, Snapshot

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TableStore:
    """Live mirror of one remote table.

    Usage::

        async with await TableStore.connect(connection, TableStoreConfig("todos")) as store:
            unsubscribe = store.subscribe(print)
            await store.mutate(1, {"done": True})
            unsubscribe()

    The change feed is joined while the store has at least one subscriber.
    """

    def __init__(
        self,
        config: TableStoreConfig,
        *,
        remote: RemoteTable,
        feed: ChangeFeed,
        broadcast: BroadcastChannel | None = None,
        on_ready: Callable[[], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._remote = remote
        self._feed = feed
        # Peers are only needed when updates can be coalesced.
        self._broadcast = broadcast if config.coalescing_window is not None else None
        self._closers: list[Callable[[], Awaitable[None]]] = []

        self._snapshot = Snapshot(config.index_name)
        self._drain = PendingWriteDrain(remote, self._snapshot, table_name=config.table_name)
        self._applier = ChangeApplier(self._snapshot, table_name=config.table_name, overlay=self._drain.overlay)
        self._coalescer = MutationCoalescer(
            config,
            remote=remote,
            snapshot=self._snapshot,
            drain=self._drain,
            broadcast=self._broadcast,
            clock=clock,
            sleep=sleep,
        )
        self._lifecycle = LifecycleController(
            self._snapshot,
            self._drain,
            feed=feed,
            broadcast=self._broadcast,
            on_ready=on_ready,
            loop=loop,
        )

        feed.on_change(self._applier.apply_raw)
        if self._broadcast is not None:
            self._broadcast.on_broadcast(config.broadcast_event, self._coalescer.receive_broadcast)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    async def connect(
        cls,
        connection: ConnectionConfig,
        config: TableStoreConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        on_ready: Callable[[], None] | None = None,
    ) -> TableStore:
        """Build a store backed by the REST API and the realtime broker.

        Must be awaited inside the event loop that will drive the store.
        """
        loop = asyncio.get_running_loop()
        remote = RestTableClient(connection, session=session)
        runtime = MqttRuntime(loop=loop, keepalive=connection.mqtt_keepalive, logger=_logger)
        feed = MqttChangeFeed(runtime, table_name=config.table_name, topic_prefix=connection.topic_prefix)
        broadcast = None
        if config.coalescing_window is not None:
            broadcast = MqttBroadcastChannel(
                runtime,
                table_name=config.table_name,
                topic_prefix=connection.topic_prefix,
                ack_timeout=config.broadcast_ack_timeout,
            )
        runtime.start(MqttBootstrap.from_connection(connection))

        store = cls(config, remote=remote, feed=feed, broadcast=broadcast, on_ready=on_ready, loop=loop)

        async def _stop_runtime() -> None:
            runtime.stop()

        store._closers.extend([_stop_runtime, remote.close])
        return store

    async def __aenter__(self) -> TableStore:
        await self.load()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def table_name(self) -> str:
        return self._config.table_name

    @property
    def index_name(self) -> str:
        return self._config.index_name

    @property
    def mutate_interval(self) -> float | None:
        return self._config.mutate_interval

    @property
    def last_mutate(self) -> datetime | None:
        return self._coalescer.last_mutate

    @property
    def pending_keys(self) -> list[RowKey]:
        """Keys with locally applied edits not yet written to the table."""
        return list(self._drain.pending)

    @property
    def ready(self) -> bool:
        return self._lifecycle.ready

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def broadcast(self) -> BroadcastChannel | None:
        return self._broadcast

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    def get(self) -> list[Row]:
        """Current rows in order."""
        return self._snapshot.get()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Observe the rows; the first subscriber activates the realtime channels."""
        return self._snapshot.subscribe(observer)

    async def load(self) -> RemoteError | None:
        """Replace the rows with a full fetch of the table."""
        result = await self._remote.select(self._config.table_name)
        if result.error is not None:
            _logger.warning("Initial fetch of %s failed: %s", self._config.table_name, result.error)
        self._snapshot.replace_all(result.rows)
        return result.error

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add(self, row: Row) -> RemoteError | None:
        return await self._coalescer.add(row)

    async def remove(self, key: RowKey) -> RemoteError | None:
        return await self._coalescer.remove(key)

    async def mutate(self, key: RowKey, patch: Row) -> RemoteError | None:
        return await self._coalescer.mutate(key, patch)

    async def flush(self) -> list[RowKey]:
        """Write all pending edits now and return the saved keys."""
        return await self._drain.flush_all()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> list[RowKey]:
        """Drain pending edits, leave the channels and release connections.

        Hosts must call this on shutdown; nothing is hooked into process exit.
        """
        await self._lifecycle.wait_closed()
        saved = await self._lifecycle.teardown(force=True)
        closers, self._closers = self._closers, []
        for closer in closers:
            await closer()
        return saved


def get_table_store(
    remote: RemoteTable,
    feed: ChangeFeed,
    table_name: str,
    *,
    index_name: str = "id",
    mutate_interval: float | None = None,
    broadcast: BroadcastChannel | None = None,
    on_ready: Callable[[], None] | None = None,
) -> TableStore:
    """Build a :class:`TableStore` from already constructed collaborators.

    Parameters
    ----------
    remote : RemoteTable
        Remote store client used for the initial fetch and all writes.
    feed : ChangeFeed
        Change feed for *table_name*.
    table_name : str
        Table to mirror.
    index_name : str
        Primary key column. Defaults to ``"id"``.
    mutate_interval : float or None
        Coalescing window in milliseconds; requires *broadcast*.
    broadcast : BroadcastChannel or None
        Peer relay for coalesced edits.
    on_ready : callable or None
        Called once when the broadcast channel is first joined.
    """
    config = TableStoreConfig(table_name=table_name, index_name=index_name, mutate_interval=mutate_interval)
    return TableStore(config, remote=remote, feed=feed, broadcast=broadcast, on_ready=on_ready)
