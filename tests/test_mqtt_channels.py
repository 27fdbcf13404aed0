from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from tablesync._mqtt import MqttBootstrap, MqttBroadcastChannel, MqttChangeFeed, MqttRuntime, _MqttChannel
from tablesync.config import ConnectionConfig
from tablesync.models import ChannelState, SendResult, SubscribeStatus


class _FakeRuntime:
    def __init__(self) -> None:
        self.topics: dict[str, tuple[Callable[[str, bytes], None], Callable[[bool], None]]] = {}
        self.unsubscribed: list[str] = []
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.ack: bool | None = True
        self.forgotten: list[asyncio.Future[bool]] = []

    def subscribe(self, topic: str, on_message: Callable[[str, bytes], None], on_suback: Callable[[bool], None]) -> None:
        self.topics[topic] = (on_message, on_suback)

    def unsubscribe(self, topic: str) -> None:
        self.unsubscribed.append(topic)
        self.topics.pop(topic, None)

    def publish(self, topic: str, payload: bytes) -> asyncio.Future[bool]:
        self.published.append((topic, json.loads(payload)))
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        if self.ack is not None:
            future.set_result(self.ack)
        return future

    def forget_ack(self, future: asyncio.Future[bool]) -> None:
        self.forgotten.append(future)

    def suback(self, topic: str, granted: bool = True) -> None:
        self.topics[topic][1](granted)

    def deliver(self, topic: str, payload: Any) -> None:
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.topics[topic][0](topic, raw)


def test_change_feed_state_machine() -> None:
    runtime = _FakeRuntime()
    feed = MqttChangeFeed(runtime, table_name="todos")  # type: ignore[arg-type]
    statuses: list[SubscribeStatus] = []

    feed.subscribe(statuses.append)
    assert feed.state == ChannelState.JOINING
    feed.subscribe(statuses.append)  # already joining
    runtime.suback("realtime/todos/changes")

    assert feed.state == ChannelState.JOINED
    assert statuses == [SubscribeStatus.SUBSCRIBED]

    feed.unsubscribe()
    assert feed.state == ChannelState.CLOSED
    assert runtime.unsubscribed == ["realtime/todos/changes"]
    assert statuses[-1] == SubscribeStatus.CLOSED


def test_rejected_subscription_marks_channel_errored() -> None:
    runtime = _FakeRuntime()
    feed = MqttChangeFeed(runtime, table_name="todos", topic_prefix="rt")  # type: ignore[arg-type]
    statuses: list[SubscribeStatus] = []

    feed.subscribe(statuses.append)
    runtime.suback("rt/todos/changes", granted=False)

    assert feed.state == ChannelState.ERRORED
    assert statuses == [SubscribeStatus.CHANNEL_ERROR]


def test_change_feed_delivers_json_objects_and_drops_garbage() -> None:
    runtime = _FakeRuntime()
    feed = MqttChangeFeed(runtime, table_name="todos")  # type: ignore[arg-type]
    received: list[dict[str, Any]] = []
    feed.on_change(received.append)
    feed.subscribe()

    runtime.deliver("realtime/todos/changes", {"eventType": "INSERT", "new": {"id": 1}})
    runtime.deliver("realtime/todos/changes", b"not json")
    runtime.deliver("realtime/todos/changes", [1, 2])

    assert received == [{"eventType": "INSERT", "new": {"id": 1}}]


@pytest.mark.asyncio
async def test_broadcast_send_requires_joined_channel() -> None:
    runtime = _FakeRuntime()
    channel = MqttBroadcastChannel(runtime, table_name="todos", sender="me")  # type: ignore[arg-type]

    assert await channel.send("todos-mutate", {"id": 1}) == SendResult.ERROR

    channel.subscribe()
    runtime.suback("realtime/todos/broadcast")
    assert await channel.send("todos-mutate", {"id": 1, "text": "x"}) == SendResult.OK
    assert runtime.published == [
        ("realtime/todos/broadcast", {"event": "todos-mutate", "payload": {"id": 1, "text": "x"}, "sender": "me"})
    ]


@pytest.mark.asyncio
async def test_broadcast_send_times_out_without_ack() -> None:
    runtime = _FakeRuntime()
    runtime.ack = None
    channel = MqttBroadcastChannel(runtime, table_name="todos", ack_timeout=0.01)  # type: ignore[arg-type]
    channel.subscribe()
    runtime.suback("realtime/todos/broadcast")

    assert await channel.send("todos-mutate", {"id": 1}) == SendResult.TIMED_OUT
    assert len(runtime.forgotten) == 1


def test_broadcast_drops_own_messages_and_routes_by_event() -> None:
    runtime = _FakeRuntime()
    channel = MqttBroadcastChannel(runtime, table_name="todos", sender="me")  # type: ignore[arg-type]
    received: list[dict[str, Any]] = []
    channel.on_broadcast("todos-mutate", received.append)
    channel.subscribe()

    topic = "realtime/todos/broadcast"
    runtime.deliver(topic, {"event": "todos-mutate", "payload": {"id": 1}, "sender": "me"})
    runtime.deliver(topic, {"event": "other", "payload": {"id": 2}, "sender": "peer"})
    runtime.deliver(topic, {"event": "todos-mutate", "payload": {"id": 3}, "sender": "peer"})
    runtime.deliver(topic, {"payload": "missing event"})

    assert received == [{"id": 3}]


def test_bootstrap_from_connection() -> None:
    connection = ConnectionConfig(
        base_url="https://db.example.com",
        api_key="k",
        mqtt_port=1883,
        mqtt_tls=False,
        mqtt_username="user",
        mqtt_password="pw",
    )

    bootstrap = MqttBootstrap.from_connection(connection, client_id="client-1")

    assert bootstrap.broker_host == "db.example.com"
    assert bootstrap.broker_port == 1883
    assert bootstrap.tls is False
    assert bootstrap.client_id == "client-1"
    assert MqttBootstrap.from_connection(connection).client_id.startswith("tablesync_")


class _Reason:
    def __init__(self, failure: bool = False) -> None:
        self.is_failure = failure


class _PahoClientDouble:
    instances: list[_PahoClientDouble] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.subscribed: list[str] = []
        self.published: list[str] = []
        self.disconnected = False
        self._mid = 0
        _PahoClientDouble.instances.append(self)

    def enable_logger(self, _logger: Any) -> None:
        pass

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        pass

    def connect_async(self, host: str, port: int, keepalive: int) -> None:
        self.target = (host, port, keepalive)

    def loop_start(self) -> None:
        pass

    def loop_stop(self) -> None:
        pass

    def disconnect(self) -> None:
        self.disconnected = True

    def subscribe(self, topic: str, qos: int) -> tuple[int, int]:
        self._mid += 1
        self.subscribed.append(topic)
        return mqtt.MQTT_ERR_SUCCESS, self._mid

    def unsubscribe(self, topic: str) -> tuple[int, int]:
        return mqtt.MQTT_ERR_SUCCESS, 0

    def publish(self, topic: str, payload: bytes, qos: int) -> SimpleNamespace:
        self._mid += 1
        self.published.append(topic)
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS, mid=self._mid)


@pytest.mark.asyncio
async def test_runtime_replays_subscriptions_and_resolves_acks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(mqtt, "Client", _PahoClientDouble)
    runtime = MqttRuntime(loop=asyncio.get_running_loop())
    subacks: list[bool] = []
    messages: list[tuple[str, bytes]] = []

    runtime.subscribe("rt/todos/changes", lambda topic, payload: messages.append((topic, payload)), subacks.append)
    runtime.start(MqttBootstrap(broker_host="broker", broker_port=1883, client_id="c-1", tls=False))
    client = _PahoClientDouble.instances[-1]
    assert client.target == ("broker", 1883, 60)
    assert client.subscribed == []

    client.on_connect(client, None, None, _Reason(), None)
    assert runtime.is_connected
    assert client.subscribed == ["rt/todos/changes"]

    client.on_subscribe(client, None, 1, [_Reason()], None)
    client.on_message(client, None, SimpleNamespace(topic="rt/todos/changes", payload=b"{}"))
    client.on_message(client, None, SimpleNamespace(topic="rt/unknown", payload=b"{}"))
    ack = runtime.publish("rt/todos/broadcast", b"{}")
    client.on_publish(client, None, 2, _Reason(), None)

    assert await asyncio.wait_for(ack, timeout=1.0) is True
    assert subacks == [True]
    assert messages == [("rt/todos/changes", b"{}")]

    runtime.stop()
    assert client.disconnected
    assert not runtime.is_running


def test_channel_base_requires_message_handler() -> None:
    with pytest.raises(TypeError):
        _MqttChannel(_FakeRuntime(), "rt/todos/changes")  # type: ignore[abstract, arg-type]


class _EagerAckClient(_PahoClientDouble):
    """Client whose broker acks before publish/subscribe return."""

    def subscribe(self, topic: str, qos: int) -> tuple[int, int]:
        result, mid = super().subscribe(topic, qos)
        self.on_subscribe(self, None, mid, [_Reason()], None)
        return result, mid

    def publish(self, topic: str, payload: bytes, qos: int) -> SimpleNamespace:
        info = super().publish(topic, payload, qos)
        self.on_publish(self, None, info.mid, _Reason(failure=True), None)
        return info


@pytest.mark.asyncio
async def test_runtime_resolves_acks_that_arrive_before_registration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(mqtt, "Client", _EagerAckClient)
    runtime = MqttRuntime(loop=asyncio.get_running_loop())
    runtime.start(MqttBootstrap(broker_host="broker", broker_port=1883, client_id="c-1", tls=False))
    client = _PahoClientDouble.instances[-1]
    client.on_connect(client, None, None, _Reason(), None)
    subacks: list[bool] = []

    runtime.subscribe("rt/todos/broadcast", lambda topic, payload: None, subacks.append)
    ack = runtime.publish("rt/todos/broadcast", b"{}")

    assert await asyncio.wait_for(ack, timeout=1.0) is False
    await asyncio.sleep(0)
    assert subacks == [True]
    assert runtime._early_acks == {}
    assert runtime._pending_acks == {}
    runtime.stop()


@pytest.mark.asyncio
async def test_forget_ack_drops_the_pending_future(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(mqtt, "Client", _PahoClientDouble)
    runtime = MqttRuntime(loop=asyncio.get_running_loop())
    runtime.start(MqttBootstrap(broker_host="broker", broker_port=1883, client_id="c-1", tls=False))

    ack = runtime.publish("rt/todos/broadcast", b"{}")
    assert len(runtime._pending_acks) == 1
    runtime.forget_ack(ack)

    assert runtime._pending_acks == {}
    runtime.stop()


def test_publish_while_broker_ack_is_dispatched_does_not_deadlock() -> None:
    loop = asyncio.new_event_loop()
    try:
        runtime = MqttRuntime(loop=loop)
        bootstrap = MqttBootstrap(broker_host="localhost", broker_port=1883, client_id="c-1", tls=False)
        client = runtime._build_client(bootstrap)
        runtime._client = client
        holding = threading.Event()

        # paho's network thread runs on_publish with its outgoing message lock held.
        def dispatch_puback() -> None:
            with client._out_message_mutex:
                holding.set()
                time.sleep(0.2)
                client.on_publish(client, None, 1, ReasonCode(PacketTypes.PUBACK), None)

        network = threading.Thread(target=dispatch_puback, daemon=True)
        network.start()
        assert holding.wait(timeout=1.0)
        futures: list[asyncio.Future[bool]] = []
        caller = threading.Thread(
            target=lambda: futures.append(runtime.publish("rt/todos/broadcast", b"{}")),
            daemon=True,
        )
        caller.start()

        network.join(timeout=3.0)
        caller.join(timeout=3.0)

        assert not network.is_alive()
        assert not caller.is_alive()
        assert len(futures) == 1
    finally:
        loop.close()
