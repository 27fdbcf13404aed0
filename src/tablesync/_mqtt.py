"""MQTT-backed change-feed and broadcast channels."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import json
import logging
import secrets
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt
from pydantic import ValidationError

from tablesync.channels import StatusCallback
from tablesync.config import ConnectionConfig
from tablesync.exceptions import ChannelError
from tablesync.models import ChannelState, Row, SendResult, SubscribeStatus
from tablesync.state.events import BroadcastMessage

MessageHandler = Callable[[str, bytes], None]


@dataclass(frozen=True)
class MqttBootstrap:
    """Broker data required to connect."""

    broker_host: str
    broker_port: int
    client_id: str
    username: str | None = None
    password: str | None = None
    tls: bool = True

    @classmethod
    def from_connection(cls, config: ConnectionConfig, *, client_id: str | None = None) -> MqttBootstrap:
        return cls(
            broker_host=config.broker_host,
            broker_port=config.mqtt_port,
            client_id=client_id or f"tablesync_{secrets.token_hex(8)}",
            username=config.mqtt_username,
            password=config.mqtt_password,
            tls=config.mqtt_tls,
        )


def _decode_json_object(payload: bytes) -> dict[str, Any]:
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError("MQTT payload is not a JSON object")
    return parsed


class MqttRuntime:
    """Threaded paho-mqtt runtime that hands messages to an asyncio loop.

    Topic subscriptions are remembered and replayed after every reconnect.
    The runtime lock only guards its own maps and is never held across a
    paho call, since paho runs callbacks with its own locks held.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._keepalive = keepalive
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self._lock = threading.Lock()
        self._topics: dict[str, tuple[MessageHandler, Callable[[bool], None]]] = {}
        self._pending_subacks: dict[int, str] = {}
        self._pending_acks: dict[int, asyncio.Future[bool]] = {}
        # Acks that arrived before the issuing call registered its mid.
        self._calls_in_flight = 0
        self._early_subacks: dict[int, bool] = {}
        self._early_acks: dict[int, bool] = {}

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    def start(self, bootstrap: MqttBootstrap) -> None:
        """Connect with the provided broker details and start the network loop."""
        self.stop()
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s",
            bootstrap.broker_host,
            bootstrap.broker_port,
            bootstrap.client_id,
        )

        client = self._build_client(bootstrap)
        client.connect_async(bootstrap.broker_host, bootstrap.broker_port, keepalive=self._keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def _build_client(self, bootstrap: MqttBootstrap) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=bootstrap.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if bootstrap.username:
            client.username_pw_set(bootstrap.username, bootstrap.password)
        if bootstrap.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)
            self._connected = True
            with self._lock:
                topics = list(self._topics)
            for topic in topics:
                self._send_subscribe(c, topic)

        def on_subscribe(
            _c: mqtt.Client,
            _userdata: Any,
            mid: int,
            reason_code_list: Any,
            _properties: Any,
        ) -> None:
            granted = all(not rc.is_failure for rc in reason_code_list)
            with self._lock:
                topic = self._pending_subacks.pop(mid, None)
                if topic is None and self._calls_in_flight:
                    self._early_subacks[mid] = granted
                entry = self._topics.get(topic) if topic is not None else None
            if entry is None:
                return
            self._logger.debug("MQTT SUBACK topic=%s granted=%s", topic, granted)
            self._loop.call_soon_threadsafe(entry[1], granted)

        def on_publish(
            _c: mqtt.Client,
            _userdata: Any,
            mid: int,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            ok = not reason_code.is_failure
            with self._lock:
                future = self._pending_acks.pop(mid, None)
                if future is None and self._calls_in_flight:
                    self._early_acks[mid] = ok
            if future is None:
                return
            self._loop.call_soon_threadsafe(self._resolve_ack, future, ok)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            with self._lock:
                entry = self._topics.get(msg.topic)
            if entry is None:
                return
            self._logger.debug("Received PUBLISH topic=%s bytes=%d", msg.topic, len(msg.payload))
            self._loop.call_soon_threadsafe(entry[0], msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._connected = False
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_publish = on_publish
        client.on_message = on_message
        client.on_disconnect = on_disconnect
        return client

    def stop(self) -> None:
        """Stop and disconnect the current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False

        with self._lock:
            pending = list(self._pending_acks.values())
            self._pending_acks.clear()
            self._pending_subacks.clear()
            self._early_acks.clear()
            self._early_subacks.clear()
        for future in pending:
            if not future.done():
                future.cancel()

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def subscribe(self, topic: str, on_message: MessageHandler, on_suback: Callable[[bool], None]) -> None:
        """Register handlers for *topic* and subscribe when connected."""
        with self._lock:
            self._topics[topic] = (on_message, on_suback)
        client = self._client
        if client is not None and self._connected:
            self._send_subscribe(client, topic)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._topics.pop(topic, None)
        client = self._client
        if client is not None and self._connected:
            client.unsubscribe(topic)

    @contextlib.contextmanager
    def _paho_call(self) -> Iterator[None]:
        """Mark a paho call whose ack may arrive before its mid is registered."""
        with self._lock:
            self._calls_in_flight += 1
        try:
            yield
        finally:
            with self._lock:
                self._calls_in_flight -= 1
                if not self._calls_in_flight:
                    self._early_acks.clear()
                    self._early_subacks.clear()

    def _send_subscribe(self, client: mqtt.Client, topic: str) -> None:
        with self._paho_call():
            result, mid = client.subscribe(topic, qos=1)
            granted: bool | None = None
            with self._lock:
                if result == mqtt.MQTT_ERR_SUCCESS and mid is not None:
                    granted = self._early_subacks.pop(mid, None)
                    if granted is None:
                        self._pending_subacks[mid] = topic
                entry = self._topics.get(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("MQTT subscribe to %s failed: %s", topic, mqtt.error_string(result))
            return
        if granted is not None and entry is not None:
            self._loop.call_soon_threadsafe(entry[1], granted)

    def publish(self, topic: str, payload: bytes) -> asyncio.Future[bool]:
        """Publish at QoS 1; the returned future resolves on the broker ack."""
        client = self._client
        if client is None:
            raise ChannelError("MQTT runtime is not running", topic=topic)
        future: asyncio.Future[bool] = self._loop.create_future()
        with self._paho_call():
            info = client.publish(topic, payload, qos=1)
            early: bool | None = None
            with self._lock:
                if info.rc == mqtt.MQTT_ERR_SUCCESS:
                    early = self._early_acks.pop(info.mid, None)
                    if early is None:
                        self._pending_acks[info.mid] = future
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            future.set_result(False)
        elif early is not None:
            future.set_result(early)
        return future

    def forget_ack(self, future: asyncio.Future[bool]) -> None:
        """Stop tracking *future*, e.g. after its caller gave up waiting."""
        with self._lock:
            for mid, pending in list(self._pending_acks.items()):
                if pending is future:
                    del self._pending_acks[mid]

    @staticmethod
    def _resolve_ack(future: asyncio.Future[bool], ok: bool) -> None:
        if not future.done():
            future.set_result(ok)


class _MqttChannel(abc.ABC):
    """Topic subscription with the joining/joined state machine."""

    def __init__(self, runtime: MqttRuntime, topic: str, *, logger: logging.Logger | None = None) -> None:
        self._runtime = runtime
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)
        self._state = ChannelState.CLOSED
        self._on_status: StatusCallback | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def topic(self) -> str:
        return self._topic

    def subscribe(self, on_status: StatusCallback | None = None) -> None:
        if self._state in (ChannelState.JOINED, ChannelState.JOINING):
            return
        self._on_status = on_status
        self._state = ChannelState.JOINING
        self._runtime.subscribe(self._topic, self._handle_message, self._handle_suback)

    def unsubscribe(self) -> None:
        if self._state == ChannelState.CLOSED:
            return
        self._state = ChannelState.LEAVING
        self._runtime.unsubscribe(self._topic)
        self._state = ChannelState.CLOSED
        self._report(SubscribeStatus.CLOSED)

    def _handle_suback(self, granted: bool) -> None:
        if self._state != ChannelState.JOINING:
            return
        if granted:
            self._state = ChannelState.JOINED
            self._report(SubscribeStatus.SUBSCRIBED)
        else:
            self._state = ChannelState.ERRORED
            self._report(SubscribeStatus.CHANNEL_ERROR)

    def _report(self, status: SubscribeStatus) -> None:
        callback = self._on_status
        if callback is None:
            return
        try:
            callback(status)
        except Exception:
            self._logger.warning("Channel status callback failed topic=%s", self._topic, exc_info=True)

    @abc.abstractmethod
    def _handle_message(self, topic: str, payload: bytes) -> None:
        """Handle one raw message received on the channel topic."""



class MqttChangeFeed(_MqttChannel):
    """Change feed for one table on ``{prefix}/{table}/changes``."""

    def __init__(self, runtime: MqttRuntime, *, table_name: str, topic_prefix: str = "realtime") -> None:
        super().__init__(runtime, f"{topic_prefix}/{table_name}/changes")
        self._handlers: list[Callable[[dict[str, Any]], None]] = []

    def on_change(self, handler: Callable[[dict[str, Any]], None]) -> None:
        self._handlers.append(handler)

    def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            parsed = _decode_json_object(payload)
        except (UnicodeDecodeError, ValueError):
            self._logger.error("Undecodable change payload on %s", topic, exc_info=True)
            return
        for handler in self._handlers:
            handler(parsed)


class MqttBroadcastChannel(_MqttChannel):
    """Broadcast relay for one table on ``{prefix}/{table}/broadcast``.

    Messages this channel sent itself are dropped on receipt.
    """

    def __init__(
        self,
        runtime: MqttRuntime,
        *,
        table_name: str,
        topic_prefix: str = "realtime",
        ack_timeout: float = 5.0,
        sender: str | None = None,
    ) -> None:
        super().__init__(runtime, f"{topic_prefix}/{table_name}/broadcast")
        self._ack_timeout = ack_timeout
        self._sender = sender or secrets.token_hex(8)
        self._handlers: dict[str, list[Callable[[Row], None]]] = {}

    @property
    def sender(self) -> str:
        return self._sender

    def on_broadcast(self, event: str, handler: Callable[[Row], None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def send(self, event: str, payload: Row) -> SendResult:
        if self._state != ChannelState.JOINED:
            return SendResult.ERROR
        message = BroadcastMessage(event=event, payload=payload, sender=self._sender)
        try:
            ack = self._runtime.publish(self._topic, message.model_dump_json().encode("utf-8"))
        except ChannelError:
            self._logger.debug("Broadcast publish failed topic=%s", self._topic, exc_info=True)
            return SendResult.ERROR
        try:
            ok = await asyncio.wait_for(ack, timeout=self._ack_timeout)
        except TimeoutError:
            self._runtime.forget_ack(ack)
            return SendResult.TIMED_OUT
        except asyncio.CancelledError:
            # The runtime cancels outstanding acks on stop; only our own cancellation propagates.
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return SendResult.ERROR
        return SendResult.OK if ok else SendResult.ERROR

    def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            message = BroadcastMessage.model_validate(_decode_json_object(payload))
        except (UnicodeDecodeError, ValueError, ValidationError):
            self._logger.warning("Undecodable broadcast payload on %s", topic, exc_info=True)
            return
        if message.sender == self._sender:
            return
        for handler in self._handlers.get(message.event, []):
            handler(message.payload)
