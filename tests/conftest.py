from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from tablesync.models import ChannelState, RemoteError, Row, RowKey, SelectResult, SendResult, SubscribeStatus


class FakeFeed:
    """In-memory change feed; ``emit`` delivers a wire payload to handlers."""

    def __init__(self, journal: list[str] | None = None) -> None:
        self.state = ChannelState.CLOSED
        self.handlers: list[Callable[[dict[str, Any]], None]] = []
        self.subscribe_calls = 0
        self.journal = journal if journal is not None else []

    def on_change(self, handler: Callable[[dict[str, Any]], None]) -> None:
        self.handlers.append(handler)

    def subscribe(self, on_status: Callable[[SubscribeStatus], None] | None = None) -> None:
        self.subscribe_calls += 1
        self.state = ChannelState.JOINED
        self.journal.append("feed.subscribe")
        if on_status is not None:
            on_status(SubscribeStatus.SUBSCRIBED)

    def unsubscribe(self) -> None:
        self.state = ChannelState.CLOSED
        self.journal.append("feed.unsubscribe")

    def emit(self, payload: dict[str, Any]) -> None:
        for handler in self.handlers:
            handler(payload)


class FakeBroadcast:
    """In-memory broadcast channel.

    ``results`` is consumed one entry per send (then ``OK``); successful sends
    are delivered to every channel in ``peers``.
    """

    def __init__(self, journal: list[str] | None = None, *, auto_join: bool = True) -> None:
        self.state = ChannelState.CLOSED
        self.auto_join = auto_join
        self.handlers: dict[str, list[Callable[[Row], None]]] = {}
        self.sent: list[tuple[str, Row]] = []
        self.results: list[SendResult] = []
        self.peers: list[FakeBroadcast] = []
        self.subscribe_calls = 0
        self.on_status: Callable[[SubscribeStatus], None] | None = None
        self.journal = journal if journal is not None else []

    def on_broadcast(self, event: str, handler: Callable[[Row], None]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def subscribe(self, on_status: Callable[[SubscribeStatus], None] | None = None) -> None:
        self.subscribe_calls += 1
        self.on_status = on_status
        self.journal.append("broadcast.subscribe")
        if self.auto_join:
            self.join()
        else:
            self.state = ChannelState.JOINING

    def join(self) -> None:
        self.state = ChannelState.JOINED
        if self.on_status is not None:
            self.on_status(SubscribeStatus.SUBSCRIBED)

    def unsubscribe(self) -> None:
        self.state = ChannelState.CLOSED
        self.journal.append("broadcast.unsubscribe")

    async def send(self, event: str, payload: Row) -> SendResult:
        await asyncio.sleep(0)
        self.sent.append((event, dict(payload)))
        result = self.results.pop(0) if self.results else SendResult.OK
        if result == SendResult.OK:
            for peer in self.peers:
                peer.deliver(event, payload)
        return result

    def deliver(self, event: str, payload: Row) -> None:
        for handler in self.handlers.get(event, []):
            handler(dict(payload))


class FakeRemote:
    """In-memory remote table that echoes successful writes on its feeds."""

    def __init__(
        self,
        rows: list[Row] | None = None,
        *,
        table: str = "todos",
        index_name: str = "id",
        journal: list[str] | None = None,
    ) -> None:
        self.table = table
        self.index_name = index_name
        self.rows: list[Row] = [dict(row) for row in rows or []]
        self.calls: list[tuple[Any, ...]] = []
        self.feeds: list[FakeFeed] = []
        self.failing_keys: set[RowKey] = set()
        self.select_error: RemoteError | None = None
        self.journal = journal if journal is not None else []

    @property
    def updates(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == "update"]

    def _emit(self, event_type: str, new: Row, old: Row) -> None:
        for feed in self.feeds:
            feed.emit({"eventType": event_type, "table": self.table, "new": dict(new), "old": dict(old)})

    def _find(self, key: RowKey) -> Row | None:
        return next((row for row in self.rows if row.get(self.index_name) == key), None)

    async def select(self, table: str) -> SelectResult:
        await asyncio.sleep(0)
        self.calls.append(("select", table))
        if self.select_error is not None:
            return SelectResult(error=self.select_error)
        return SelectResult(rows=[dict(row) for row in self.rows])

    async def insert(self, table: str, row: Row) -> RemoteError | None:
        await asyncio.sleep(0)
        self.calls.append(("insert", table, dict(row)))
        if row.get(self.index_name) in self.failing_keys:
            return RemoteError(message="insert rejected", code="23505", status=409)
        self.rows.append(dict(row))
        self._emit("INSERT", row, {})
        return None

    async def update(self, table: str, column: str, key: RowKey, patch: Row) -> RemoteError | None:
        await asyncio.sleep(0)
        self.calls.append(("update", table, column, key, dict(patch)))
        self.journal.append(f"remote.update:{key}")
        if key in self.failing_keys:
            return RemoteError(message="update rejected", code="500", status=500)
        row = self._find(key)
        if row is not None:
            row.update(patch)
            self._emit("UPDATE", row, {self.index_name: key})
        return None

    async def delete(self, table: str, column: str, key: RowKey) -> RemoteError | None:
        await asyncio.sleep(0)
        self.calls.append(("delete", table, column, key))
        if key in self.failing_keys:
            return RemoteError(message="delete rejected", code="42501", status=403)
        row = self._find(key)
        if row is not None:
            self.rows.remove(row)
            self._emit("DELETE", {}, {self.index_name: key})
        return None


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: float) -> None:
        self.now += timedelta(milliseconds=milliseconds)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def journal() -> list[str]:
    return []


@pytest.fixture
def feed(journal: list[str]) -> FakeFeed:
    return FakeFeed(journal)


@pytest.fixture
def broadcast(journal: list[str]) -> FakeBroadcast:
    return FakeBroadcast(journal)


@pytest.fixture
def remote(feed: FakeFeed, journal: list[str]) -> FakeRemote:
    fake = FakeRemote([{"id": "1", "text": "", "done": False}, {"id": "2", "text": "other", "done": False}], journal=journal)
    fake.feeds.append(feed)
    return fake


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
