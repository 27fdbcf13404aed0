"""Value types shared by the store and its boundary adapters."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

Row = dict[str, Any]
"""A table row: open-ended mapping from column name to value."""

RowKey = str | int
"""Value of the index key column identifying a row."""


class ChannelState(StrEnum):
    """Connection state of a realtime channel."""

    CLOSED = "closed"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    ERRORED = "errored"


class SubscribeStatus(StrEnum):
    """Status reported to ``subscribe`` callbacks."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class SendResult(StrEnum):
    """Outcome of a broadcast send."""

    OK = "ok"
    TIMED_OUT = "timed out"
    ERROR = "error"


class RemoteError(BaseModel):
    """Error result of a remote store operation.

    Mirrors the PostgREST error body (``message``, ``code``, ``details``,
    ``hint``) plus the HTTP status when one was received.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    message: str
    code: str = ""
    details: str | None = None
    hint: str | None = None
    status: int | None = None

    @field_validator("code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("details", "hint", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def __str__(self) -> str:
        if self.code:
            return f"{self.code}: {self.message}"
        return self.message


class SelectResult(BaseModel):
    """Rows returned by a full-table select, or the error that prevented it."""

    model_config = ConfigDict(frozen=True)

    rows: list[Row] = Field(default_factory=list)
    error: RemoteError | None = None
