"""Ordered in-memory mirror of a remote table.

Rows are treated as immutable once stored: every change swaps in a new
dict, so lists handed to observers never change underneath them.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from typing import Any

from tablesync.exceptions import InvalidKeyError
from tablesync.models import Row, RowKey

_logger = logging.getLogger(__name__)

Observer = Callable[[list[Row]], None]


def _merge_patch(target: Row, patch: Row) -> Row:
    """Return a copy of *target* with the keys in *patch* overwritten."""
    merged = dict(target)
    merged.update(copy.deepcopy(patch))
    return merged


class Snapshot:
    """Ordered rows of one table, unique by index key.

    Every mutating call notifies each subscribed observer exactly once with
    the full current row list. The first subscriber triggers the start hook
    and the last unsubscribe triggers the stop hook (see
    :meth:`bind_lifecycle`).
    """

    def __init__(self, index_name: str = "id") -> None:
        self._index_name = index_name
        self._rows: list[Row] = []
        self._positions: dict[RowKey, int] = {}
        self._observers: dict[int, Observer] = {}
        self._next_token = 0
        self._on_start: Callable[[], None] | None = None
        self._on_stop: Callable[[], None] | None = None

    @property
    def index_name(self) -> str:
        return self._index_name

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: object) -> bool:
        return key in self._positions

    def bind_lifecycle(self, on_start: Callable[[], None], on_stop: Callable[[], None]) -> None:
        """Register the hooks run on the first subscribe and the last unsubscribe."""
        self._on_start = on_start
        self._on_stop = on_stop

    def key_of(self, row: Row) -> RowKey | None:
        """Return the index key value of *row*, or ``None`` when it has none."""
        value = row.get(self._index_name)
        if value is None or value == "":
            return None
        return value

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self) -> list[Row]:
        """Current rows in order."""
        return list(self._rows)

    def find(self, key: RowKey) -> Row | None:
        position = self._positions.get(key)
        if position is None:
            return None
        return self._rows[position]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def replace_all(self, rows: Iterable[Row]) -> None:
        """Replace the whole sequence, e.g. with the result of a full fetch.

        Rows without an index key are dropped; duplicate keys keep the
        position of the first occurrence and the values of the last.
        """
        new_rows: list[Row] = []
        positions: dict[RowKey, int] = {}
        for row in rows:
            key = self.key_of(row)
            if key is None:
                _logger.warning("Dropping row without index %s: %s", self._index_name, row)
                continue
            existing = positions.get(key)
            if existing is None:
                positions[key] = len(new_rows)
                new_rows.append(dict(row))
            else:
                new_rows[existing] = dict(row)
        self._rows = new_rows
        self._positions = positions
        self._notify()

    def upsert(self, row: Row, *, merge: bool = False) -> Row:
        """Insert *row* or replace the row with the same key in place.

        With ``merge=True`` the fields of *row* are overlaid on the existing
        row instead of replacing it. Returns the stored row.
        """
        key = self.key_of(row)
        if key is None:
            raise InvalidKeyError(f"Row has no value for index {self._index_name!r}", key=key)

        position = self._positions.get(key)
        if position is None:
            stored = dict(row)
            self._positions[key] = len(self._rows)
            self._rows = [*self._rows, stored]
        else:
            stored = _merge_patch(self._rows[position], row) if merge else dict(row)
            rows = list(self._rows)
            rows[position] = stored
            self._rows = rows
        self._notify()
        return stored

    def remove_by_key(self, key: RowKey) -> bool:
        """Remove the row with *key*. Missing keys are not an error.

        Returns whether a row was removed.
        """
        position = self._positions.get(key)
        if position is not None:
            self._rows = self._rows[:position] + self._rows[position + 1 :]
            self._reindex()
        self._notify()
        return position is not None

    def _reindex(self) -> None:
        self._positions = {}
        for position, row in enumerate(self._rows):
            key = self.key_of(row)
            if key is not None:
                self._positions[key] = position

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register *observer* and call it with the current rows.

        Returns an idempotent unsubscribe handle.
        """
        token = self._next_token
        self._next_token += 1
        first = not self._observers
        self._observers[token] = observer

        if first and self._on_start is not None:
            self._on_start()
        self._call(observer, self.get())

        def unsubscribe() -> None:
            if self._observers.pop(token, None) is None:
                return
            if not self._observers and self._on_stop is not None:
                self._on_stop()

        return unsubscribe

    def _notify(self) -> None:
        if not self._observers:
            return
        rows = self.get()
        for observer in list(self._observers.values()):
            self._call(observer, rows)

    @staticmethod
    def _call(observer: Observer, rows: list[Any]) -> None:
        try:
            observer(rows)
        except Exception:
            _logger.warning("Snapshot observer failed", exc_info=True)
