"""
Canonical leg shapes shared by the sources, the merge engine and the board.

NormalizedLeg is what every source parser produces; StoredLeg is the decoded
view of a persisted leg record.  Legs are persisted as named attributes on a
generic record (see db/store.py), so this module also owns the attribute
names and their storage types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from legs.timewindow import effective_departure, to_iso


class Mode(str, Enum):
    FLIGHT = "flight"
    TRAIN = "train"
    TRAM = "tram"
    BUS = "bus"
    METRO = "metro"


class LegStatus(str, Enum):
    SCHEDULED = "scheduled"
    DELAYED = "delayed"
    DEPARTED = "departed"
    CANCELED = "canceled"


MODES = frozenset(m.value for m in Mode)

STATUS_TAG_PREFIX = "status:"
ROUTE_TAG_PREFIX = "route:"


@dataclass
class StopDetail:
    stop_id: str
    stop_name: str
    sequence: int
    stop_code: str = ""
    lat: float | None = None
    lon: float | None = None
    arrival_time: datetime | None = None
    departure_time: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stop_id": self.stop_id,
            "stop_name": self.stop_name,
            "stop_code": self.stop_code,
            "lat": self.lat,
            "lon": self.lon,
            "arrival_time": to_iso(self.arrival_time),
            "departure_time": to_iso(self.departure_time),
            "stop_sequence": self.sequence,
        }


@dataclass
class NormalizedLeg:
    mode: Mode
    trip_id: str
    service_date: date
    source: str
    origin_code: str = ""
    origin_name: str = ""
    dest_code: str = ""
    dest_name: str = ""
    headsign: str = ""
    dep_scheduled: datetime | None = None
    dep_estimated: datetime | None = None
    arr_scheduled: datetime | None = None
    arr_estimated: datetime | None = None
    platform: str | None = None
    gate: str | None = None
    terminal: str | None = None
    vehicle_id: str | None = None
    route_short_name: str | None = None
    route_color: str | None = None
    stops: list[StopDetail] = field(default_factory=list)
    status: LegStatus | None = None     # explicit status from the source, if any
    extra_details: dict[str, Any] | None = None

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.trip_id, self.service_date.isoformat())

    @property
    def effective_departure(self) -> datetime | None:
        return effective_departure(self.dep_estimated, self.dep_scheduled)


# Attribute name → storage type.  Anything not listed is stored as a string.
LEG_FIELD_TYPES: dict[str, str] = {
    "dep_sched_at": "datetime",
    "dep_est_at": "datetime",
    "arr_sched_at": "datetime",
    "arr_est_at": "datetime",
    "stops": "json",
}


def leg_to_fields(leg: NormalizedLeg) -> dict[str, Any]:
    """Attribute map written for a leg.  extra_details is deliberately absent."""
    return {
        "trip_id": leg.trip_id,
        "service_date": leg.service_date.isoformat(),
        "origin": leg.origin_code,
        "origin_name": leg.origin_name,
        "dest": leg.dest_code,
        "dest_name": leg.dest_name,
        "dep_sched_at": leg.dep_scheduled,
        "dep_est_at": leg.dep_estimated,
        "arr_sched_at": leg.arr_scheduled,
        "arr_est_at": leg.arr_estimated,
        "platform": leg.platform,
        "gate": leg.gate,
        "terminal": leg.terminal,
        "route_short_name": leg.route_short_name,
        "route_color": leg.route_color,
        "headsign": leg.headsign,
        "vehicle_id": leg.vehicle_id,
        "source": leg.source,
        "stops": [s.as_dict() for s in leg.stops],
    }


@dataclass
class StoredLeg:
    id: int
    title: str
    category_id: int | None
    trip_id: str
    service_date: str                  # YYYY-MM-DD
    mode: str | None = None
    status_tag: str | None = None
    origin_code: str = ""
    origin_name: str = ""
    dest_code: str = ""
    dest_name: str = ""
    headsign: str = ""
    dep_scheduled: datetime | None = None
    dep_estimated: datetime | None = None
    arr_scheduled: datetime | None = None
    arr_estimated: datetime | None = None
    platform: str | None = None
    gate: str | None = None
    terminal: str | None = None
    vehicle_id: str | None = None
    route_short_name: str | None = None
    route_color: str | None = None
    source: str | None = None
    stops: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_parts(
        cls,
        record_id: int,
        title: str,
        category_id: int | None,
        fields: dict[str, Any],
        tags: list[str],
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> "StoredLeg":
        mode = next((t for t in tags if t in MODES), None)
        status = next(
            (t[len(STATUS_TAG_PREFIX):] for t in tags if t.startswith(STATUS_TAG_PREFIX)),
            None,
        )
        return cls(
            id=record_id,
            title=title,
            category_id=category_id,
            trip_id=fields.get("trip_id", ""),
            service_date=fields.get("service_date", ""),
            mode=mode,
            status_tag=status,
            origin_code=fields.get("origin") or "",
            origin_name=fields.get("origin_name") or "",
            dest_code=fields.get("dest") or "",
            dest_name=fields.get("dest_name") or "",
            headsign=fields.get("headsign") or "",
            dep_scheduled=fields.get("dep_sched_at"),
            dep_estimated=fields.get("dep_est_at"),
            arr_scheduled=fields.get("arr_sched_at"),
            arr_estimated=fields.get("arr_est_at"),
            platform=fields.get("platform"),
            gate=fields.get("gate"),
            terminal=fields.get("terminal"),
            vehicle_id=fields.get("vehicle_id"),
            route_short_name=fields.get("route_short_name"),
            route_color=fields.get("route_color"),
            source=fields.get("source"),
            stops=fields.get("stops") or [],
            created_at=created_at,
            updated_at=updated_at,
        )

    @property
    def effective_departure(self) -> datetime | None:
        return effective_departure(self.dep_estimated, self.dep_scheduled)

