"""
Client-side reconciliation of board snapshots.

Each poll returns the full ordered board.  Rather than replacing the rendered
list wholesale, the new snapshot is merged into the current rows by leg id so
local UI state (which rows are expanded, anything else the client tracks)
survives the refresh:

  - ids missing from the snapshot are dropped
  - ids present in both get the server fields replaced, local state kept
  - new ids are added collapsed
  - the result is re-sorted by effective departure, like the server

Responses can arrive out of order when a slow fetch overlaps a newer one;
BoardReconciler tags each fetch with a sequence number and ignores anything
older than what it has already applied.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from legs.errors import InvalidTimeFormat
from legs.timewindow import departure_sort_key, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ClientRow:
    leg: dict[str, Any]
    expanded: bool = False
    local: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> int:
        return self.leg["id"]

    def sort_key(self):
        try:
            estimated = parse_timestamp(self.leg.get("dep_est_at"))
            scheduled = parse_timestamp(self.leg.get("dep_sched_at"))
        except InvalidTimeFormat:
            estimated = scheduled = None
        return (departure_sort_key(estimated, scheduled), self.id)


def reconcile(current: list[ClientRow], fetched: list[dict[str, Any]]) -> list[ClientRow]:
    """Merge a fresh snapshot into `current`, returning a new sorted row list."""
    by_id = {row.id: row for row in current}
    rows: list[ClientRow] = []
    for leg in fetched:
        existing = by_id.get(leg["id"])
        if existing is None:
            rows.append(ClientRow(leg=dict(leg)))
        else:
            rows.append(ClientRow(leg=dict(leg), expanded=existing.expanded, local=existing.local))
    rows.sort(key=ClientRow.sort_key)
    return rows


class BoardReconciler:
    def __init__(self) -> None:
        self.rows: list[ClientRow] = []
        self._issued = 0
        self._applied = 0

    def begin_fetch(self) -> int:
        self._issued += 1
        return self._issued

    def apply(self, seq: int, fetched: list[dict[str, Any]]) -> bool:
        """Apply the snapshot for fetch `seq`; returns False if it was stale."""
        if seq <= self._applied:
            logger.debug("Ignoring stale board response %d (already applied %d).", seq, self._applied)
            return False
        self._applied = seq
        self.rows = reconcile(self.rows, fetched)
        return True

    def toggle(self, leg_id: int) -> bool:
        """Flip a row's expanded flag.  Returns the new value (False if the row is gone)."""
        for row in self.rows:
            if row.id == leg_id:
                row.expanded = not row.expanded
                return row.expanded
        return False
