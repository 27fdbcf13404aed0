"""Realtime channel interfaces consumed by the store core.

Handlers registered on a channel are always invoked on the event loop that
owns the store, one message at a time, in delivery order.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from tablesync.models import ChannelState, Row, SendResult, SubscribeStatus

StatusCallback = Callable[[SubscribeStatus], None]


class ChangeFeed(Protocol):
    """Push channel delivering row-level change payloads for one table."""

    @property
    def state(self) -> ChannelState: ...

    def on_change(self, handler: Callable[[dict[str, Any]], None]) -> None: ...

    def subscribe(self, on_status: StatusCallback | None = None) -> None: ...

    def unsubscribe(self) -> None: ...


class BroadcastChannel(Protocol):
    """Peer relay for coalesced edits that have not been written yet."""

    @property
    def state(self) -> ChannelState: ...

    def on_broadcast(self, event: str, handler: Callable[[Row], None]) -> None: ...

    def subscribe(self, on_status: StatusCallback | None = None) -> None: ...

    def unsubscribe(self) -> None: ...

    async def send(self, event: str, payload: Row) -> SendResult: ...


def is_active(channel: ChangeFeed | BroadcastChannel | None) -> bool:
    """Whether *channel* is joined or in the middle of joining."""
    return channel is not None and channel.state in (ChannelState.JOINED, ChannelState.JOINING)
