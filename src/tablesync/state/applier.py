"""Apply change-feed events to a snapshot.

Rules:
- INSERT and UPDATE upsert the new row, so a replayed insert converges and
  an update for an unknown key heals a missed insert. Local edits that are
  still buffered are laid back on top of the incoming row.
- DELETE removes by the key found in the old row.
- An event without the index key on the side it needs is malformed: it is
  logged and dropped, never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from tablesync.models import Row
from tablesync.state.events import ChangeEvent, ChangeType
from tablesync.state.snapshot import Snapshot

_logger = logging.getLogger(__name__)


class ChangeApplier:
    """Stateless dispatcher from change events to snapshot mutations.

    Must be driven from the event loop that owns the snapshot so events are
    applied one at a time in delivery order.
    """

    def __init__(
        self,
        snapshot: Snapshot,
        *,
        table_name: str | None = None,
        overlay: Callable[[Row], Row] | None = None,
    ) -> None:
        self._snapshot = snapshot
        self._table_name = table_name
        self._overlay = overlay

    def apply(self, event: ChangeEvent) -> bool:
        """Apply *event*; return whether the snapshot was mutated."""
        if self._table_name and event.table and event.table != self._table_name:
            _logger.debug("Ignoring %s event for table %s", event.event_type, event.table)
            return False

        index_name = self._snapshot.index_name
        key = self._snapshot.key_of(event.record)
        if key is None:
            _logger.error(
                "Index %s not found in %s payload for table %s",
                index_name,
                event.event_type,
                event.table or self._table_name,
            )
            return False

        if event.event_type == ChangeType.DELETE:
            self._snapshot.remove_by_key(key)
        else:
            row = event.new
            if self._overlay is not None:
                row = self._overlay(row)
            self._snapshot.upsert(row)
        return True

    def apply_raw(self, payload: dict[str, Any]) -> bool:
        """Validate a wire payload and apply it."""
        try:
            event = ChangeEvent.model_validate(payload)
        except ValidationError:
            _logger.error("Malformed change event dropped: %s", payload, exc_info=True)
            return False
        return self.apply(event)
