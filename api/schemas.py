from __future__ import annotations
from typing import Literal
from pydantic import BaseModel


# ---------------------------------------------------------------------------
# GET /transit/board — building blocks
# ---------------------------------------------------------------------------

class StopView(BaseModel):
    stop_id: str
    stop_name: str
    stop_code: str = ""
    lat: float | None = None
    lon: float | None = None
    arrival_time: str | None = None     # YYYY-MM-DDTHH:MM:SSZ
    departure_time: str | None = None
    stop_sequence: int


class LegView(BaseModel):
    id: int
    title: str
    mode: Literal["flight", "train", "tram", "bus", "metro"] | None
    status: Literal["scheduled", "delayed", "departed", "canceled"] | None
    route: str | None            # may be "AA100 / BA900" for code-shares
    route_color: str | None
    headsign: str
    platform: str | None
    gate: str | None
    terminal: str | None
    dep_sched_at: str | None
    dep_est_at: str | None
    arr_sched_at: str | None
    arr_est_at: str | None
    origin: str
    origin_name: str
    dest: str
    dest_name: str
    stops: list[StopView]
    details_html: str | None = None


class BoardResponse(BaseModel):
    departures: list[LegView]


# ---------------------------------------------------------------------------
# POST /ingest/*
# ---------------------------------------------------------------------------

class IngestResponse(BaseModel):
    processed: int
    created: int
    updated: int
    errors: int


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class LegStats(BaseModel):
    count: int
    last_updated_at: str | None


class SchedulerStats(BaseModel):
    running: bool
    next_ingest_at: str | None
    next_purge_at: str | None


class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    enabled: bool
    legs: LegStats
    scheduler: SchedulerStats
