"""
Turns a GTFS static export (MTA subway by default) into departure legs for the
trips leaving within the next GTFS_WINDOW_HOURS.

Feed contents used:
  stop_times.txt     → streamed twice, never fully materialized
  trips.txt          → streamed, filtered to admitted trips
  routes.txt         → Route reference (small, read whole)
  stops.txt          → Stop reference (small, read whole)
  calendar.txt       → optional: weekday service patterns
  calendar_dates.txt → optional: added/removed service exceptions

The subway export has hundreds of thousands of stop_times rows while only a
few hundred trips fall inside a two-hour window, so the parse is two-pass:

  Pass 1  scan first-stop rows only (stop_sequence <= 1) and admit trips whose
          first departure lies in [now, now + window] on yesterday's or today's
          service date (yesterday covers 24:00+ trips still running after
          midnight).  Per admitted trip we keep the id, service date and
          departure instant.
  Pass 2  re-scan stop_times keeping full rows for admitted trips only.

Admitted trips are then joined against the reference tables and emitted in
groups of GTFS_BATCH_SIZE, releasing each group's stop rows as it goes, so
peak memory follows the admitted-trip count rather than the feed size.
"""

import asyncio
import io
import logging
import zipfile
from collections import defaultdict
from collections.abc import Iterator
from datetime import date, datetime, timedelta
from itertools import islice

import httpx
import pandas as pd

from config import DATA_DIR, TrackerConfig
from ingestion.base import LegSource, ParseContext
from legs.errors import InvalidTimeFormat
from legs.timewindow import parse_service_time
from legs.types import Mode, NormalizedLeg, StopDetail

logger = logging.getLogger(__name__)

SOURCE_NAME = "mta"
GTFS_ZIP_PATH = DATA_DIR / "gtfs_static.zip"

_FIRST_STOP_COLUMNS = ["trip_id", "stop_sequence", "departure_time"]
_STOP_TIME_COLUMNS = ["trip_id", "stop_id", "stop_sequence", "arrival_time", "departure_time"]

# trip_id → (service_date, first departure); a trip can be a candidate on two dates
Admitted = dict[str, list[tuple[date, datetime]]]


async def download_gtfs_zip(client: httpx.AsyncClient, url: str) -> bytes:
    """Download the GTFS zip from the given URL and cache it to disk."""
    if not url:
        raise ValueError("GTFS_STATIC_URL is not configured. Set it in your .env file.")
    logger.info("Downloading GTFS static feed from %s", url)
    response = await client.get(url, follow_redirects=True)
    response.raise_for_status()
    GTFS_ZIP_PATH.write_bytes(response.content)
    logger.info("Saved GTFS zip to %s (%d bytes)", GTFS_ZIP_PATH, len(response.content))
    return response.content


class ServiceCalendar:
    """
    Answers "does service_id run on this date?" from calendar.txt and
    calendar_dates.txt.  A feed with neither file runs every service daily.
    """

    _WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

    def __init__(self, calendar: pd.DataFrame | None, calendar_dates: pd.DataFrame | None) -> None:
        self.has_data = calendar is not None or calendar_dates is not None
        self._patterns: dict[str, tuple[str, str, list[bool]]] = {}
        self._exceptions: dict[tuple[str, str], int] = {}
        if calendar is not None:
            for row in calendar.itertuples(index=False):
                self._patterns[row.service_id] = (
                    row.start_date,
                    row.end_date,
                    [getattr(row, day) == "1" for day in self._WEEKDAYS],
                )
        if calendar_dates is not None:
            for row in calendar_dates.itertuples(index=False):
                try:
                    self._exceptions[(row.service_id, row.date)] = int(row.exception_type)
                except ValueError:
                    continue

    def is_active(self, service_id: str, day: date) -> bool:
        if not self.has_data:
            return True
        ymd = day.strftime("%Y%m%d")
        exception = self._exceptions.get((service_id, ymd))
        if exception == 1:
            return True
        if exception == 2:
            return False
        pattern = self._patterns.get(service_id)
        if pattern is None:
            return False
        start, end, weekdays = pattern
        return start <= ymd <= end and weekdays[day.weekday()]


class GtfsStaticSource(LegSource):
    name = SOURCE_NAME

    def __init__(self, config: TrackerConfig, mode: Mode = Mode.METRO) -> None:
        self.url = config.gtfs_static_url
        self.mode = mode
        self.window = timedelta(hours=config.gtfs_window_hours)
        self.batch_size = config.gtfs_batch_size
        self.chunk_rows = config.gtfs_chunk_rows

    def is_configured(self) -> bool:
        return bool(self.url)

    async def fetch_legs(self, client: httpx.AsyncClient, context: ParseContext) -> list[NormalizedLeg]:
        try:
            zip_bytes = await download_gtfs_zip(client, self.url)
        except httpx.HTTPError as exc:
            context.failed_fetches += 1
            logger.error("GTFS static download failed: %s", exc)
            return []
        # pandas parsing is CPU-bound; keep the event loop free for the REST sources
        return await asyncio.to_thread(self.parse, zip_bytes, context)

    def parse(self, zip_bytes: bytes, context: ParseContext) -> list[NormalizedLeg]:
        """Parse a GTFS zip.  A broken archive counts as one failed fetch, never raises."""
        try:
            with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
                legs = list(self.iter_legs(zf, context))
        except (zipfile.BadZipFile, KeyError, ValueError, pd.errors.ParserError) as exc:
            context.failed_fetches += 1
            logger.error("GTFS static feed unusable: %s", exc)
            return []
        logger.info("GTFS static: %d legs, %d records dropped.", len(legs), context.dropped)
        return legs

    def iter_legs(self, zf: zipfile.ZipFile, context: ParseContext) -> Iterator[NormalizedLeg]:
        names = set(zf.namelist())
        now = context.now
        service_dates = [now.date() - timedelta(days=1), now.date()]

        logger.info("GTFS pass 1: finding trips departing %s – %s", now, now + self.window)
        admitted = self._scan_first_stops(zf, service_dates, now, context)
        logger.info("GTFS pass 1: %d candidate trips in window.", len(admitted))
        if not admitted:
            return

        trips = self._read_admitted_trips(zf, admitted)
        calendar = ServiceCalendar(
            _read_table(zf, "calendar.txt") if "calendar.txt" in names else None,
            _read_table(zf, "calendar_dates.txt") if "calendar_dates.txt" in names else None,
        )
        selected: dict[str, date] = {}
        for trip_id, candidates in admitted.items():
            trip = trips.get(trip_id)
            if trip is None:
                context.drop("trip %s not in trips.txt", trip_id)
                continue
            active = [d for d, _ in candidates if calendar.is_active(trip["service_id"], d)]
            if active:
                selected[trip_id] = active[0]
        del admitted
        logger.info("GTFS: %d trips running in window after calendar check.", len(selected))

        logger.info("GTFS pass 2: loading stop times for admitted trips...")
        stop_rows = self._collect_stop_times(zf, selected)
        routes = _index(_read_table(zf, "routes.txt"), "route_id")
        stops = _index(_read_table(zf, "stops.txt"), "stop_id")

        processed = 0
        trip_ids = iter(list(selected))
        while batch := list(islice(trip_ids, self.batch_size)):
            for trip_id in batch:
                rows = stop_rows.pop(trip_id, [])
                leg = self._build_leg(
                    trip_id, selected[trip_id], trips[trip_id], rows, routes, stops, context
                )
                if leg is not None:
                    yield leg
            processed += len(batch)
            logger.info("GTFS: processed %d/%d trips...", processed, len(selected))

    def _scan_first_stops(
        self,
        zf: zipfile.ZipFile,
        service_dates: list[date],
        now: datetime,
        context: ParseContext,
    ) -> Admitted:
        window_end = now + self.window
        admitted: Admitted = defaultdict(list)
        for chunk in _stream(zf, "stop_times.txt", _FIRST_STOP_COLUMNS, self.chunk_rows):
            sequence = pd.to_numeric(chunk["stop_sequence"], errors="coerce")
            first_stops = chunk[(sequence <= 1) & (chunk["departure_time"] != "")]
            for row in first_stops.itertuples(index=False):
                for service_date in service_dates:
                    try:
                        departure = parse_service_time(service_date, row.departure_time)
                    except InvalidTimeFormat:
                        context.drop("bad first-stop time %r on trip %s", row.departure_time, row.trip_id)
                        break
                    if now <= departure <= window_end:
                        admitted[row.trip_id].append((service_date, departure))
        return dict(admitted)

    def _read_admitted_trips(self, zf: zipfile.ZipFile, admitted: Admitted) -> dict[str, dict]:
        trips: dict[str, dict] = {}
        wanted = list(admitted)
        for chunk in _stream(zf, "trips.txt", None, self.chunk_rows):
            for row in chunk[chunk["trip_id"].isin(wanted)].to_dict("records"):
                trips[row["trip_id"]] = row
        return trips

    def _collect_stop_times(self, zf: zipfile.ZipFile, selected: dict[str, date]) -> dict[str, list[dict]]:
        stop_rows: dict[str, list[dict]] = defaultdict(list)
        wanted = list(selected)
        for chunk in _stream(zf, "stop_times.txt", _STOP_TIME_COLUMNS, self.chunk_rows):
            for row in chunk[chunk["trip_id"].isin(wanted)].to_dict("records"):
                stop_rows[row["trip_id"]].append(row)
        logger.info("GTFS pass 2: loaded stop times for %d trips.", len(stop_rows))
        return stop_rows

    def _build_leg(
        self,
        trip_id: str,
        service_date: date,
        trip: dict,
        rows: list[dict],
        routes: dict[str, dict],
        stops: dict[str, dict],
        context: ParseContext,
    ) -> NormalizedLeg | None:
        route = routes.get(trip.get("route_id", ""))
        if route is None:
            context.drop("trip %s references unknown route %s", trip_id, trip.get("route_id"))
            return None
        if not rows:
            context.drop("trip %s has no stop times", trip_id)
            return None

        rows.sort(key=_sequence)
        first, last = rows[0], rows[-1]
        origin = stops.get(first["stop_id"])
        dest = stops.get(last["stop_id"])
        if origin is None or dest is None:
            context.drop("trip %s has unknown origin/destination stop", trip_id)
            return None

        try:
            dep_time = parse_service_time(service_date, first["departure_time"])
        except InvalidTimeFormat:
            context.drop("trip %s has unparseable departure %r", trip_id, first["departure_time"])
            return None
        if dep_time < context.now:
            context.drop("trip %s already departed", trip_id)
            return None

        detailed_stops = []
        for row in rows:
            stop = stops.get(row["stop_id"])
            if stop is None:
                continue
            detailed_stops.append(StopDetail(
                stop_id=row["stop_id"],
                stop_name=stop.get("stop_name", ""),
                stop_code=stop.get("stop_code", ""),
                lat=_float(stop.get("stop_lat")),
                lon=_float(stop.get("stop_lon")),
                arrival_time=_service_time_or_none(service_date, row.get("arrival_time")),
                departure_time=_service_time_or_none(service_date, row.get("departure_time")),
                sequence=_sequence(row),
            ))

        return NormalizedLeg(
            mode=self.mode,
            trip_id=trip_id,
            service_date=service_date,
            source=self.name,
            origin_code=first["stop_id"],
            origin_name=origin.get("stop_name", ""),
            dest_code=last["stop_id"],
            dest_name=dest.get("stop_name", ""),
            headsign=trip.get("trip_headsign") or dest.get("stop_name", ""),
            dep_scheduled=dep_time,
            arr_scheduled=_service_time_or_none(service_date, last.get("arrival_time")),
            route_short_name=route.get("route_short_name") or route.get("route_long_name") or None,
            route_color=route.get("route_color") or None,
            stops=detailed_stops,
        )


def _stream(zf: zipfile.ZipFile, filename: str, columns: list[str] | None, chunk_rows: int) -> Iterator[pd.DataFrame]:
    """Yield a feed file in DataFrame chunks of at most chunk_rows rows."""
    with zf.open(filename) as f:
        with pd.read_csv(
            f, dtype=str, usecols=columns, keep_default_na=False, chunksize=chunk_rows
        ) as reader:
            yield from reader


def _read_table(zf: zipfile.ZipFile, filename: str) -> pd.DataFrame:
    with zf.open(filename) as f:
        return pd.read_csv(f, dtype=str).fillna("")


def _index(df: pd.DataFrame, key: str) -> dict[str, dict]:
    return {row[key]: row for row in df.to_dict("records")}


def _sequence(row: dict) -> int:
    try:
        return int(row["stop_sequence"])
    except (TypeError, ValueError):
        return 0


def _float(value: str | None) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except ValueError:
        return None


def _service_time_or_none(service_date: date, hms: str | None) -> datetime | None:
    if not hms:
        return None
    try:
        return parse_service_time(service_date, hms)
    except InvalidTimeFormat:
        return None
