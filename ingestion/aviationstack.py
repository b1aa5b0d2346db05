"""
Polls AviationStack for departing flights at each monitored airport.

One GET /flights?dep_iata=<code> per airport per cycle.  The API reports
code-shares from the marketing carrier's side: a record for BA900 carries
flight.codeshared = {flight_iata: "AA100", ...} when American operates it.
In that case the operating flight number keys the leg so every marketing
number for the same aircraft lands on one trip_id:

    trip_id = "<operating flight>-<departure.scheduled as sent by the API>"

while the marketing number is kept as route_short_name and accumulated by the
merge engine.

API flight_status values are authoritative when they carry information:
  cancelled        → canceled
  active / landed  → departed
  scheduled / *    → None (derive from timings)
"""

import logging
from typing import Any

import httpx

from config import TrackerConfig
from ingestion.base import ParseContext, RestPollSource, block
from legs.errors import FetchError, InvalidTimeFormat
from legs.timewindow import local_date, parse_timestamp
from legs.types import LegStatus, Mode, NormalizedLeg

logger = logging.getLogger(__name__)

SOURCE_NAME = "aviationstack"
PAGE_LIMIT = 50

_STATUS_MAP: dict[str, LegStatus] = {
    "cancelled": LegStatus.CANCELED,
    "active": LegStatus.DEPARTED,
    "landed": LegStatus.DEPARTED,
}


def map_flight_status(flight_status: str | None) -> LegStatus | None:
    return _STATUS_MAP.get((flight_status or "").lower())


class AviationstackSource(RestPollSource):
    name = SOURCE_NAME

    def __init__(self, config: TrackerConfig) -> None:
        self.api_key = config.aviationstack_api_key
        self.base_url = config.aviationstack_base_url.rstrip("/")
        self.airports = config.monitored_airports

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def entities(self) -> list[str]:
        return list(self.airports)

    async def fetch_entity(self, client: httpx.AsyncClient, entity: str) -> dict[str, Any]:
        logger.info("Fetching AviationStack departures for %s", entity)
        payload = await self.get_json(
            client,
            entity,
            f"{self.base_url}/flights",
            params={"access_key": self.api_key, "dep_iata": entity, "limit": PAGE_LIMIT},
        )
        if "error" in payload:
            # AviationStack reports quota/auth problems as 200 + {"error": {...}}
            raise FetchError(self.name, entity, str(payload["error"]))
        if not payload.get("data"):
            logger.info("AviationStack returned no flights for %s.", entity)
        return payload

    def parse(self, payload: dict[str, Any], context: ParseContext) -> list[NormalizedLeg]:
        legs: list[NormalizedLeg] = []
        for flight in payload.get("data") or []:
            if not isinstance(flight, dict):
                context.drop("flight record is %s, not an object", type(flight).__name__)
                continue
            try:
                leg = self._parse_flight(flight)
            except InvalidTimeFormat as exc:
                context.drop("%s", exc)
                continue
            if leg is None:
                context.drop("flight missing departure/arrival/flight block or schedule")
                continue
            legs.append(leg)
        return legs

    def _parse_flight(self, flight: dict[str, Any]) -> NormalizedLeg | None:
        departure = block(flight.get("departure"))
        arrival = block(flight.get("arrival"))
        info = block(flight.get("flight"))
        if not (departure and arrival and info):
            return None

        scheduled_raw = departure.get("scheduled")
        dep_scheduled = parse_timestamp(scheduled_raw)
        if dep_scheduled is None:
            return None

        marketing_flight = info.get("iata") or info.get("icao")
        codeshared = block(info.get("codeshared"))
        if codeshared:
            operating_flight = codeshared.get("flight_iata") or codeshared.get("flight_icao")
            logger.info("Code-share detected: %s operated by %s", marketing_flight, operating_flight)
        else:
            operating_flight = info.get("iata") or info.get("icao")
        if not operating_flight:
            return None

        aircraft = block(flight.get("aircraft"))
        airline = block(flight.get("airline"))
        flight_status = flight.get("flight_status")

        return NormalizedLeg(
            mode=Mode.FLIGHT,
            trip_id=f"{operating_flight}-{scheduled_raw}",
            service_date=local_date(scheduled_raw) or dep_scheduled.date(),
            source=SOURCE_NAME,
            origin_code=departure.get("iata") or "",
            origin_name=departure.get("airport") or "",
            dest_code=arrival.get("iata") or "",
            dest_name=arrival.get("airport") or "",
            headsign=arrival.get("airport") or "",
            dep_scheduled=dep_scheduled,
            dep_estimated=parse_timestamp(departure.get("estimated")),
            arr_scheduled=parse_timestamp(arrival.get("scheduled")),
            arr_estimated=parse_timestamp(arrival.get("estimated")),
            gate=departure.get("gate"),
            terminal=departure.get("terminal"),
            vehicle_id=aircraft.get("registration"),
            route_short_name=marketing_flight,
            status=map_flight_status(flight_status),
            extra_details={
                "airline_name": airline.get("name"),
                "airline_iata": airline.get("iata"),
                "flight_status": flight_status,
                "departure_delay": departure.get("delay"),
                "departure_actual": parse_timestamp(departure.get("actual")),
                "arrival_gate": arrival.get("gate"),
                "arrival_baggage": arrival.get("baggage"),
                "arrival_actual": parse_timestamp(arrival.get("actual")),
                "aircraft_registration": aircraft.get("registration"),
                "codeshare": codeshared or None,
            },
        )

