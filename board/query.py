"""
Board query: the time-windowed, per-route-fair snapshot served at
GET /transit/board.

Steps, in order:
  1. Candidates — legs in the configured categories carrying a trip_id,
     optionally restricted to one mode tag.  Fields, tags and posts are
     eager-loaded in a fixed number of queries.
  2. Freshness window — BOARD_WINDOW_MODE selects exactly one of:
       absolute     effective departure within now ± BOARD_WINDOW_HOURS
       time_of_day  departure time of day within TIME_WINDOW_MINUTES after
                    now's, wrapping across midnight
  3. Caps — modes in BOARD_FAIR_MODES keep at most BOARD_ROUTE_CAP legs per
     route so one busy line cannot crowd out the others; everything else
     keeps BOARD_FLAT_LIMIT legs.  Both caps keep upcoming departures first
     (soonest scheduled), then already-departed legs, most recent first.
  4. Sort by effective departure and serialize.

A leg whose stored attributes cannot be decoded is left off the board; the
rest of the board is still served.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from config import TrackerConfig
from db.models import LegRecord
from db.store import LegStore
from legs.errors import ConfigurationMissing
from legs.timewindow import (
    MINUTES_PER_DAY, departure_sort_key, in_absolute_window, in_time_of_day_window,
    minutes_of_day, to_iso, utcnow,
)
from legs.types import Mode, StoredLeg

logger = logging.getLogger(__name__)

WINDOW_ABSOLUTE = "absolute"
WINDOW_TIME_OF_DAY = "time_of_day"


def serialize_leg(leg: StoredLeg, details_html: str | None = None) -> dict[str, Any]:
    return {
        "id": leg.id,
        "title": leg.title,
        "mode": leg.mode,
        "status": leg.status_tag,
        "route": leg.route_short_name,
        "route_color": leg.route_color,
        "headsign": leg.headsign,
        "platform": leg.platform,
        "gate": leg.gate,
        "terminal": leg.terminal,
        "dep_sched_at": to_iso(leg.dep_scheduled),
        "dep_est_at": to_iso(leg.dep_estimated),
        "arr_sched_at": to_iso(leg.arr_scheduled),
        "arr_est_at": to_iso(leg.arr_estimated),
        "origin": leg.origin_code,
        "origin_name": leg.origin_name,
        "dest": leg.dest_code,
        "dest_name": leg.dest_name,
        "stops": leg.stops,
        "details_html": details_html,
    }


def _details_html(record: LegRecord) -> str | None:
    return next((p.cooked for p in record.posts if p.cooked), None)


class BoardQuery:
    def __init__(self, store: LegStore, config: TrackerConfig) -> None:
        self.store = store
        self.config = config

    def query(self, mode: str | None = None, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utcnow()
        try:
            records = self._candidates(mode)
        except ConfigurationMissing as exc:
            logger.warning("Board unavailable: %s", exc)
            return []

        decoded: list[tuple[StoredLeg, LegRecord]] = []
        for record in records:
            try:
                decoded.append((self.store.to_stored_leg(record), record))
            except ValueError as exc:
                # InvalidTimeFormat and malformed JSON are both ValueErrors
                logger.warning("Leaving leg %d off the board: %s", record.id, exc)

        in_window = [(leg, record) for leg, record in decoded if self._in_window(leg, now)]
        capped = self._apply_caps(in_window, mode, now)
        capped.sort(key=lambda pair: (departure_sort_key(pair[0].dep_estimated, pair[0].dep_scheduled), pair[0].id))

        logger.debug(
            "Board mode=%s: %d candidates, %d in window, %d served.",
            mode, len(records), len(in_window), len(capped),
        )
        return [
            serialize_leg(leg, _details_html(record) if leg.mode == Mode.FLIGHT.value else None)
            for leg, record in capped
        ]

    def _candidates(self, mode: str | None) -> list[LegRecord]:
        category_ids = self.config.category_ids
        if not category_ids:
            raise ConfigurationMissing("no leg categories configured")
        return self.store.find_tagged(
            tag=mode,
            category_ids=category_ids,
            with_field="trip_id",
            include_posts=True,
        )

    def _in_window(self, leg: StoredLeg, now: datetime) -> bool:
        departure = leg.effective_departure
        if departure is None:
            return False
        if self.config.board_window_mode == WINDOW_TIME_OF_DAY:
            return in_time_of_day_window(departure, now, self.config.time_window_minutes)
        span = timedelta(hours=self.config.board_window_hours)
        return in_absolute_window(departure, now - span, now + span)

    def _apply_caps(
        self, legs: list[tuple[StoredLeg, LegRecord]], mode: str | None, now: datetime
    ) -> list[tuple[StoredLeg, LegRecord]]:
        time_of_day = self.config.board_window_mode == WINDOW_TIME_OF_DAY
        now_minutes = minutes_of_day(now.astimezone(timezone.utc))

        def soonest_first(pair: tuple[StoredLeg, LegRecord]):
            leg = pair[0]
            departure = leg.dep_scheduled or leg.effective_departure
            if time_of_day:
                ahead = (minutes_of_day(departure.astimezone(timezone.utc)) - now_minutes) % MINUTES_PER_DAY
                return (False, timedelta(minutes=ahead), leg.id)
            # upcoming legs by scheduled departure, then departed ones most recent first
            return (departure < now, abs(departure - now), leg.id)

        if mode is not None and mode in self.config.board_fair_modes:
            by_route: dict[str, list[tuple[StoredLeg, LegRecord]]] = defaultdict(list)
            for pair in legs:
                by_route[pair[0].route_short_name or ""].append(pair)
            kept: list[tuple[StoredLeg, LegRecord]] = []
            for group in by_route.values():
                kept.extend(sorted(group, key=soonest_first)[: self.config.board_route_cap])
            return kept
        return sorted(legs, key=soonest_first)[: self.config.board_flat_limit]
