"""Normalized change and broadcast events.

The realtime adapters convert their inputs into these models. Only the
state layer and the mutation coalescer consume them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tablesync.models import Row, RowKey


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """One row-level change delivered by the change feed.

    The wire shape follows the ``postgres_changes`` payload: ``eventType``,
    ``schema``, ``table``, ``new``, ``old`` and ``commit_timestamp``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    event_type: ChangeType = Field(..., alias="eventType")
    table: str = ""
    schema_name: str = Field(default="public", alias="schema")
    new: Row = Field(default_factory=dict)
    old: Row = Field(default_factory=dict)
    commit_timestamp: datetime | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def _normalize_event_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("new", "old", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def record(self) -> Row:
        """The side of the event that carries the index key."""
        return self.old if self.event_type == ChangeType.DELETE else self.new


class BroadcastMessage(BaseModel):
    """A coalesced edit relayed to peer sessions over the broadcast channel."""

    model_config = ConfigDict(frozen=True)

    event: str
    payload: Row = Field(default_factory=dict, description="Row patch including the index key")
    sender: str = Field(default="", description="Session id of the originating store")


class PendingMutation(BaseModel):
    """A locally applied edit that still has to be written to the table."""

    model_config = ConfigDict(frozen=True)

    key: RowKey
    payload: Row = Field(default_factory=dict)
    queued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("queued_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
