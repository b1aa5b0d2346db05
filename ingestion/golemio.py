"""
Polls the Golemio PID departure boards (Prague public transport).

One GET /pid/departureboards?ids=<stop_id> per monitored stop per cycle,
looking TIME_WINDOW_MINUTES ahead.  Each departure carries a scheduled and a
predicted timestamp, the trip and route, and sometimes platform/vehicle info.

Route types follow GTFS: 0 tram, 1 metro, 2 train, 3 bus; anything else is
shown as a bus.
"""

import logging
from typing import Any

import httpx

from config import TrackerConfig
from ingestion.base import ParseContext, RestPollSource, block
from legs.errors import InvalidTimeFormat
from legs.timewindow import local_date, parse_timestamp
from legs.types import Mode, NormalizedLeg

logger = logging.getLogger(__name__)

SOURCE_NAME = "golemio"
BOARD_LIMIT = 50

_ROUTE_TYPE_MODES: dict[int, Mode] = {
    0: Mode.TRAM,
    1: Mode.METRO,
    2: Mode.TRAIN,
    3: Mode.BUS,
}


def map_route_type(route_type: Any) -> Mode:
    try:
        return _ROUTE_TYPE_MODES.get(int(route_type), Mode.BUS)
    except (TypeError, ValueError):
        return Mode.BUS


class GolemioSource(RestPollSource):
    name = SOURCE_NAME

    def __init__(self, config: TrackerConfig) -> None:
        self.api_token = config.golemio_api_token
        self.base_url = config.golemio_base_url.rstrip("/")
        self.stops = config.monitored_stops
        self.minutes_after = config.time_window_minutes

    def is_configured(self) -> bool:
        return bool(self.api_token)

    def entities(self) -> list[str]:
        return list(self.stops)

    async def fetch_entity(self, client: httpx.AsyncClient, entity: str) -> dict[str, Any]:
        return await self.get_json(
            client,
            entity,
            f"{self.base_url}/pid/departureboards",
            params={
                "ids": entity,
                "minutesBefore": 0,
                "minutesAfter": self.minutes_after,
                "limit": BOARD_LIMIT,
            },
            headers={"X-Access-Token": self.api_token, "Content-Type": "application/json"},
        )

    def parse(self, payload: dict[str, Any], context: ParseContext) -> list[NormalizedLeg]:
        stop_names = {
            s.get("stop_id"): s.get("stop_name")
            for s in payload.get("stops") or []
            if isinstance(s, dict)
        }
        legs: list[NormalizedLeg] = []
        for departure in payload.get("departures") or []:
            if not isinstance(departure, dict):
                context.drop("departure record is %s, not an object", type(departure).__name__)
                continue
            try:
                leg = self._parse_departure(departure, stop_names)
            except InvalidTimeFormat as exc:
                context.drop("%s", exc)
                continue
            if leg is None:
                context.drop("departure missing route, trip or scheduled time")
                continue
            legs.append(leg)
        return legs

    def _parse_departure(
        self, departure: dict[str, Any], stop_names: dict[str, str]
    ) -> NormalizedLeg | None:
        route = block(departure.get("route"))
        trip = block(departure.get("trip"))
        timestamps = block(departure.get("departure_timestamp"))
        if not (route and trip and timestamps and trip.get("id")):
            return None

        scheduled_raw = timestamps.get("scheduled")
        dep_scheduled = parse_timestamp(scheduled_raw)
        if dep_scheduled is None:
            return None

        stop_id = departure.get("stop_id") or ""
        headsign = trip.get("headsign") or ""
        return NormalizedLeg(
            mode=map_route_type(route.get("type")),
            trip_id=str(trip["id"]),
            # PID trip ids repeat daily; the local (Prague) date disambiguates
            service_date=local_date(scheduled_raw) or dep_scheduled.date(),
            source=SOURCE_NAME,
            origin_code=stop_id,
            origin_name=stop_names.get(stop_id) or stop_id,
            dest_code=headsign,
            dest_name=headsign,
            headsign=headsign,
            dep_scheduled=dep_scheduled,
            dep_estimated=parse_timestamp(timestamps.get("predicted")),
            platform=departure.get("platform_code"),
            vehicle_id=departure.get("vehicle_registration_number"),
            route_short_name=route.get("short_name"),
        )
