"""Remote store client for PostgREST-compatible table endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from tablesync.config import ConnectionConfig
from tablesync.models import RemoteError, Row, RowKey, SelectResult

_logger = logging.getLogger(__name__)


class RemoteTable(Protocol):
    """Structural interface of the remote store used by the store core.

    Implementations must report ordinary failures (network, validation,
    permission) as a returned :class:`RemoteError` instead of raising.
    Having a protocol here makes it easy to pass test doubles.
    """

    async def select(self, table: str) -> SelectResult: ...

    async def insert(self, table: str, row: Row) -> RemoteError | None: ...

    async def update(self, table: str, column: str, key: RowKey, patch: Row) -> RemoteError | None: ...

    async def delete(self, table: str, column: str, key: RowKey) -> RemoteError | None: ...


def _eq_filter(column: str, key: RowKey) -> dict[str, str]:
    return {column: f"eq.{key}"}


def _parse_error(status: int, text: str) -> RemoteError:
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return RemoteError.model_validate({**body, "status": status})
    return RemoteError(message=f"HTTP {status}: {text[:200]}", code=str(status), status=status)


class RestTableClient:
    """aiohttp client speaking the PostgREST table protocol.

    Usage::

        async with RestTableClient(connection) as remote:
            result = await remote.select("todos")
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http = session

    async def __aenter__(self) -> RestTableClient:
        self._require_session()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
        self._http = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
            )
            self._external_session = False
        return self._http

    def _url(self, table: str) -> str:
        return f"{self._config.base_url.rstrip('/')}/rest/v1/{table}"

    def _headers(self, *, write: bool) -> dict[str, str]:
        headers = {
            "apikey": self._config.api_key,
            "authorization": f"Bearer {self._config.api_key}",
            "accept": "application/json",
        }
        if write:
            headers["content-type"] = "application/json"
            headers["content-profile"] = self._config.schema
            headers["prefer"] = "return=minimal"
        else:
            headers["accept-profile"] = self._config.schema
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> tuple[Any, RemoteError | None]:
        http = self._require_session()
        url = self._url(table)
        data = json.dumps(body, separators=(",", ":")) if body is not None else None

        _logger.debug("%s %s params=%s", method, url, params)

        try:
            async with http.request(
                method,
                url,
                params=params,
                data=data,
                headers=self._headers(write=method != "GET"),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    error = _parse_error(resp.status, text)
                    _logger.debug("%s %s failed: %s", method, url, error)
                    return None, error
        except (aiohttp.ClientError, TimeoutError) as exc:
            _logger.debug("%s %s failed", method, url, exc_info=True)
            return None, RemoteError(message=f"Request to {table} failed: {exc}", code="network")

        if not text.strip():
            return None, None
        try:
            return json.loads(text), None
        except json.JSONDecodeError:
            return None, RemoteError(message=f"Invalid JSON from {table}: {text[:200]}", code="invalid_json")

    async def select(self, table: str) -> SelectResult:
        body, error = await self._request("GET", table, params={"select": "*"})
        if error is not None:
            return SelectResult(error=error)
        if not isinstance(body, list):
            return SelectResult(error=RemoteError(message=f"Select on {table} did not return a list"))
        return SelectResult(rows=[row for row in body if isinstance(row, dict)])

    async def insert(self, table: str, row: Row) -> RemoteError | None:
        _, error = await self._request("POST", table, body=row)
        return error

    async def update(self, table: str, column: str, key: RowKey, patch: Row) -> RemoteError | None:
        _, error = await self._request("PATCH", table, params=_eq_filter(column, key), body=patch)
        return error

    async def delete(self, table: str, column: str, key: RowKey) -> RemoteError | None:
        _, error = await self._request("DELETE", table, params=_eq_filter(column, key))
        return error
