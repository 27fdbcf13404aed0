"""Store and connection configuration for tablesync."""

from __future__ import annotations

import dataclasses
import os
from datetime import timedelta
from typing import Any

from tablesync.exceptions import TableSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, cast: type[int] | type[float]) -> int | float:
    try:
        return cast(value)
    except ValueError as exc:
        raise TableSyncConfigError(f"{env_key} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class TableStoreConfig:
    """Per-table store configuration.

    Parameters
    ----------
    table_name : str
        Name of the remote table mirrored by the store.
    index_name : str
        Column whose value uniquely identifies a row. Defaults to ``"id"``.
    mutate_interval : float or None
        Coalescing window in milliseconds. While set, a ``mutate()`` issued
        less than this long after the previous written-through one is
        applied locally, broadcast to peers and written to the table later.
        ``None`` (the default) or ``0`` writes every mutation through.
    broadcast_max_attempts : int
        Number of times a coalesced edit is offered to the broadcast
        channel before giving up.
    broadcast_retry_delay : float
        Seconds to wait between unacknowledged broadcast attempts.
    broadcast_ack_timeout : float
        Seconds a single broadcast send waits for the broker ack.
    """

    table_name: str
    index_name: str = "id"
    mutate_interval: float | None = None
    broadcast_max_attempts: int = 10
    broadcast_retry_delay: float = 0.1
    broadcast_ack_timeout: float = 5.0

    def __post_init__(self) -> None:
        if not self.table_name or not self.table_name.strip():
            raise TableSyncConfigError("table_name must be non-empty")
        if not self.index_name or not self.index_name.strip():
            raise TableSyncConfigError("index_name must be non-empty")
        if self.mutate_interval is not None and self.mutate_interval < 0:
            raise TableSyncConfigError(f"mutate_interval must not be negative, got {self.mutate_interval}")
        if self.broadcast_max_attempts < 1:
            raise TableSyncConfigError("broadcast_max_attempts must be at least 1")
        if self.broadcast_retry_delay < 0:
            raise TableSyncConfigError("broadcast_retry_delay must not be negative")

    @property
    def coalescing_window(self) -> timedelta | None:
        """The coalescing window, or ``None`` when mutations write through."""
        if not self.mutate_interval:
            return None
        return timedelta(milliseconds=self.mutate_interval)

    @property
    def broadcast_event(self) -> str:
        """Broadcast event name used for coalesced edits of this table."""
        return f"{self.table_name}-mutate"

    @classmethod
    def from_env(cls, **overrides: Any) -> TableStoreConfig:
        """Create configuration from ``TABLESYNC_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        for env_key, field_name in {
            "TABLESYNC_TABLE": "table_name",
            "TABLESYNC_INDEX_NAME": "index_name",
        }.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        numeric: dict[str, tuple[str, type[int] | type[float]]] = {
            "TABLESYNC_MUTATE_INTERVAL": ("mutate_interval", float),
            "TABLESYNC_BROADCAST_MAX_ATTEMPTS": ("broadcast_max_attempts", int),
            "TABLESYNC_BROADCAST_RETRY_DELAY": ("broadcast_retry_delay", float),
            "TABLESYNC_BROADCAST_ACK_TIMEOUT": ("broadcast_ack_timeout", float),
        }
        for env_key, (field_name, cast) in numeric.items():
            val = env.get(env_key)
            if val is not None and val.strip() and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, cast)

        config_kwargs.update(overrides)
        if "table_name" not in config_kwargs:
            raise TableSyncConfigError("table_name is required (set TABLESYNC_TABLE or pass table_name=)")
        return cls(**config_kwargs)


@dataclasses.dataclass(frozen=True)
class ConnectionConfig:
    """Connection settings for the REST store and the realtime broker.

    Parameters
    ----------
    base_url : str
        Base URL of the PostgREST-compatible API (``/rest/v1`` is appended).
    api_key : str
        API key sent as ``apikey`` and bearer token.
    schema : str
        Database schema the tables live in.
    mqtt_host : str
        Realtime broker host. Defaults to the host of ``base_url``.
    mqtt_port : int
        Realtime broker port.
    mqtt_tls : bool
        Connect to the broker over TLS.
    mqtt_username, mqtt_password : str or None
        Broker credentials.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    topic_prefix : str
        Topic namespace for change-feed and broadcast topics.
    request_timeout : float
        Total timeout in seconds for a single REST request.
    """

    base_url: str
    api_key: str
    schema: str = "public"
    mqtt_host: str = ""
    mqtt_port: int = 8883
    mqtt_tls: bool = True
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_keepalive: int = 60
    topic_prefix: str = "realtime"
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if not self.base_url:
            raise TableSyncConfigError("base_url must be non-empty")
        if self.request_timeout <= 0:
            raise TableSyncConfigError("request_timeout must be positive")

    @property
    def broker_host(self) -> str:
        """Broker host, falling back to the host part of ``base_url``."""
        if self.mqtt_host:
            return self.mqtt_host
        value = self.base_url
        if "://" in value:
            value = value.split("://", 1)[1]
        return value.split("/", 1)[0].split(":", 1)[0]

    @classmethod
    def from_env(cls, **overrides: Any) -> ConnectionConfig:
        """Create configuration from ``TABLESYNC_*`` environment variables.

        Reads ``TABLESYNC_URL`` and ``TABLESYNC_API_KEY`` plus optional
        broker settings. Explicit keyword arguments override environment
        values.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "TABLESYNC_URL": "base_url",
            "TABLESYNC_API_KEY": "api_key",
            "TABLESYNC_SCHEMA": "schema",
            "TABLESYNC_MQTT_HOST": "mqtt_host",
            "TABLESYNC_MQTT_USERNAME": "mqtt_username",
            "TABLESYNC_MQTT_PASSWORD": "mqtt_password",
            "TABLESYNC_TOPIC_PREFIX": "topic_prefix",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        port_env = env.get("TABLESYNC_MQTT_PORT")
        if port_env is not None and "mqtt_port" not in overrides:
            config_kwargs["mqtt_port"] = _env_number("TABLESYNC_MQTT_PORT", port_env, int)

        keepalive_env = env.get("TABLESYNC_MQTT_KEEPALIVE")
        if keepalive_env is not None and "mqtt_keepalive" not in overrides:
            config_kwargs["mqtt_keepalive"] = _env_number("TABLESYNC_MQTT_KEEPALIVE", keepalive_env, int)

        timeout_env = env.get("TABLESYNC_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = _env_number("TABLESYNC_REQUEST_TIMEOUT", timeout_env, float)

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("TABLESYNC_MQTT_TLS"), True)

        config_kwargs.update(overrides)
        missing = [name for name in ("base_url", "api_key") if name not in config_kwargs]
        if missing:
            raise TableSyncConfigError(f"Missing connection settings: {', '.join(missing)}")
        return cls(**config_kwargs)
