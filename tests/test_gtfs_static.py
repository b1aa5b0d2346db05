"""
Tests for ingestion.gtfs_static — the two-pass windowed parse of a GTFS
export, run against a small feed zipped in memory.

now = Monday 2025-10-06 23:30 UTC, window = 2h, so trips are admitted when
their first departure falls in [23:30, 01:30 the next day].
"""

import io
import zipfile
from datetime import date, datetime, timezone

import httpx
import pandas as pd
import pytest

from config import TrackerConfig
from ingestion.base import ParseContext
from ingestion.gtfs_static import GtfsStaticSource, ServiceCalendar
from legs.types import Mode

UTC = timezone.utc
NOW = datetime(2025, 10, 6, 23, 30, tzinfo=UTC)

ROUTES = """route_id,route_short_name,route_long_name,route_color
1,1,Broadway - 7 Avenue Local,EE352E
GS,,42 St Shuttle,6D6E71
"""

STOPS = """stop_id,stop_name,stop_lat,stop_lon
101N,Van Cortlandt Park-242 St,40.889248,-73.898583
103N,238 St,40.884667,-73.90087
104N,231 St,40.878856,-73.904834
901N,Grand Central-42 St,40.752769,-73.979189
902N,Times Sq-42 St,40.755983,-73.986229
"""

TRIPS = """route_id,service_id,trip_id,trip_headsign
1,WKD,T_IN,South Ferry
GS,WKD,T_ROLL,
1,DAILY,T_YEST,South Ferry
1,WKD,T_PAST,South Ferry
1,WKD,T_LATE,South Ferry
1,SAT,T_NOSVC,South Ferry
ZZ,WKD,T_NOROUTE,Nowhere
"""

STOP_TIMES = """trip_id,arrival_time,departure_time,stop_id,stop_sequence
T_IN,23:45:00,23:45:00,101N,1
T_IN,23:47:00,23:47:30,103N,2
T_IN,23:49:00,23:49:00,104N,3
T_ROLL,24:30:00,24:30:00,901N,1
T_ROLL,24:33:00,24:33:00,902N,2
T_YEST,47:45:00,47:45:00,101N,1
T_YEST,47:50:00,47:50:00,104N,2
T_PAST,23:00:00,23:00:00,101N,1
T_PAST,23:05:00,23:05:00,104N,2
T_LATE,27:00:00,27:00:00,101N,1
T_LATE,27:05:00,27:05:00,104N,2
T_NOSVC,23:50:00,23:50:00,101N,1
T_NOSVC,23:55:00,23:55:00,104N,2
T_NOROUTE,23:50:00,23:50:00,101N,1
T_NOROUTE,23:55:00,23:55:00,104N,2
"""

CALENDAR = """service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date
WKD,1,1,1,1,1,0,0,20250101,20251231
SAT,0,0,0,0,0,1,0,20250101,20251231
DAILY,1,1,1,1,1,1,1,20250101,20251231
"""


def _zip(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in files.items():
            zf.writestr(name, text)
    return buf.getvalue()


def _feed(**overrides) -> bytes:
    files = {
        "routes.txt": ROUTES,
        "stops.txt": STOPS,
        "trips.txt": TRIPS,
        "stop_times.txt": STOP_TIMES,
        "calendar.txt": CALENDAR,
    }
    files.update(overrides)
    return _zip({name: text for name, text in files.items() if text is not None})


@pytest.fixture
def source():
    # tiny chunks and batches so the streaming paths are exercised
    config = TrackerConfig(
        gtfs_static_url="http://example.test/gtfs.zip",
        gtfs_window_hours=2,
        gtfs_batch_size=1,
        gtfs_chunk_rows=2,
    )
    return GtfsStaticSource(config)


def _by_trip(legs):
    return {leg.trip_id: leg for leg in legs}


# ---------------------------------------------------------------------------
# Windowed parse
# ---------------------------------------------------------------------------

class TestParse:
    def test_admits_only_trips_in_window(self, source):
        legs = source.parse(_feed(), ParseContext(now=NOW))
        assert sorted(_by_trip(legs)) == ["T_IN", "T_ROLL", "T_YEST"]

    def test_leg_fields(self, source):
        leg = _by_trip(source.parse(_feed(), ParseContext(now=NOW)))["T_IN"]
        assert leg.mode == Mode.METRO
        assert leg.source == "mta"
        assert leg.service_date == date(2025, 10, 6)
        assert (leg.origin_code, leg.origin_name) == ("101N", "Van Cortlandt Park-242 St")
        assert (leg.dest_code, leg.dest_name) == ("104N", "231 St")
        assert leg.dep_scheduled == datetime(2025, 10, 6, 23, 45, tzinfo=UTC)
        assert leg.arr_scheduled == datetime(2025, 10, 6, 23, 49, tzinfo=UTC)
        assert leg.headsign == "South Ferry"
        assert leg.route_short_name == "1"
        assert leg.route_color == "EE352E"

    def test_stops_sorted_with_details(self, source):
        leg = _by_trip(source.parse(_feed(), ParseContext(now=NOW)))["T_IN"]
        assert [s.sequence for s in leg.stops] == [1, 2, 3]
        assert leg.stops[1].stop_name == "238 St"
        assert leg.stops[1].departure_time == datetime(2025, 10, 6, 23, 47, 30, tzinfo=UTC)
        assert leg.stops[0].lat == pytest.approx(40.889248)

    def test_day_rollover_trip(self, source):
        leg = _by_trip(source.parse(_feed(), ParseContext(now=NOW)))["T_ROLL"]
        assert leg.service_date == date(2025, 10, 6)
        assert leg.dep_scheduled == datetime(2025, 10, 7, 0, 30, tzinfo=UTC)

    def test_yesterdays_service_still_running(self, source):
        leg = _by_trip(source.parse(_feed(), ParseContext(now=NOW)))["T_YEST"]
        assert leg.service_date == date(2025, 10, 5)
        assert leg.dep_scheduled == datetime(2025, 10, 6, 23, 45, tzinfo=UTC)

    def test_headsign_falls_back_to_destination(self, source):
        leg = _by_trip(source.parse(_feed(), ParseContext(now=NOW)))["T_ROLL"]
        assert leg.headsign == "Times Sq-42 St"

    def test_route_long_name_fallback(self, source):
        leg = _by_trip(source.parse(_feed(), ParseContext(now=NOW)))["T_ROLL"]
        assert leg.route_short_name == "42 St Shuttle"

    def test_unknown_route_dropped_and_counted(self, source):
        context = ParseContext(now=NOW)
        legs = source.parse(_feed(), context)
        assert "T_NOROUTE" not in _by_trip(legs)
        assert context.dropped == 1

    def test_without_calendar_every_service_runs(self, source):
        legs = source.parse(_feed(**{"calendar.txt": None}), ParseContext(now=NOW))
        assert "T_NOSVC" in _by_trip(legs)

    def test_missing_stop_reference_omits_stop(self, source):
        stops = STOPS.replace("103N,238 St,40.884667,-73.90087\n", "")
        leg = _by_trip(source.parse(_feed(**{"stops.txt": stops}), ParseContext(now=NOW)))["T_IN"]
        assert [s.stop_id for s in leg.stops] == ["101N", "104N"]

    def test_missing_origin_stop_drops_trip(self, source):
        stops = STOPS.replace("901N,Grand Central-42 St,40.752769,-73.979189\n", "")
        context = ParseContext(now=NOW)
        legs = source.parse(_feed(**{"stops.txt": stops}), context)
        assert "T_ROLL" not in _by_trip(legs)
        assert context.dropped == 2   # T_ROLL + T_NOROUTE

    def test_malformed_time_row_is_skipped(self, source):
        stop_times = STOP_TIMES + "T_BAD,xx:00:00,xx:00:00,101N,1\n"
        context = ParseContext(now=NOW)
        legs = source.parse(_feed(**{"stop_times.txt": stop_times}), context)
        assert sorted(_by_trip(legs)) == ["T_IN", "T_ROLL", "T_YEST"]
        assert context.dropped >= 1

    def test_nothing_in_window(self, source):
        early = ParseContext(now=datetime(2025, 10, 6, 12, 0, tzinfo=UTC))
        assert source.parse(_feed(), early) == []

    def test_broken_archive_counts_failed_fetch(self, source):
        context = ParseContext(now=NOW)
        assert source.parse(b"not a zip", context) == []
        assert context.failed_fetches == 1

    def test_missing_required_file_counts_failed_fetch(self, source):
        context = ParseContext(now=NOW)
        assert source.parse(_feed(**{"stop_times.txt": None}), context) == []
        assert context.failed_fetches == 1


# ---------------------------------------------------------------------------
# ServiceCalendar
# ---------------------------------------------------------------------------

class TestServiceCalendar:
    calendar = pd.read_csv(io.StringIO(CALENDAR), dtype=str)
    exceptions = pd.DataFrame(
        [
            {"service_id": "WKD", "date": "20251006", "exception_type": "2"},
            {"service_id": "SAT", "date": "20251006", "exception_type": "1"},
        ]
    )

    def test_weekday_pattern(self):
        cal = ServiceCalendar(self.calendar, None)
        assert cal.is_active("WKD", date(2025, 10, 6))
        assert not cal.is_active("WKD", date(2025, 10, 5))

    def test_outside_date_range(self):
        cal = ServiceCalendar(self.calendar, None)
        assert not cal.is_active("WKD", date(2026, 1, 5))

    def test_exceptions_override_pattern(self):
        cal = ServiceCalendar(self.calendar, self.exceptions)
        assert not cal.is_active("WKD", date(2025, 10, 6))
        assert cal.is_active("SAT", date(2025, 10, 6))

    def test_unknown_service_inactive(self):
        assert not ServiceCalendar(self.calendar, None).is_active("NOPE", date(2025, 10, 6))

    def test_no_calendar_data_means_always_active(self):
        assert ServiceCalendar(None, None).is_active("anything", date(2025, 10, 6))


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------

class TestFetchLegs:
    @pytest.mark.anyio
    async def test_downloads_and_parses(self, source, tmp_path, monkeypatch):
        monkeypatch.setattr("ingestion.gtfs_static.GTFS_ZIP_PATH", tmp_path / "gtfs.zip")
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=_feed()))
        async with httpx.AsyncClient(transport=transport) as client:
            legs = await source.fetch_legs(client, ParseContext(now=NOW))
        assert len(legs) == 3
        assert (tmp_path / "gtfs.zip").exists()

    @pytest.mark.anyio
    async def test_http_error_counts_failed_fetch(self, source, tmp_path, monkeypatch):
        monkeypatch.setattr("ingestion.gtfs_static.GTFS_ZIP_PATH", tmp_path / "gtfs.zip")
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        context = ParseContext(now=NOW)
        async with httpx.AsyncClient(transport=transport) as client:
            assert await source.fetch_legs(client, context) == []
        assert context.failed_fetches == 1

    def test_unconfigured_without_url(self):
        assert not GtfsStaticSource(TrackerConfig(gtfs_static_url="")).is_configured()
