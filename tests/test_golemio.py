"""
Tests for ingestion.golemio — Prague PID departure-board parsing and the
per-stop request shape.  HTTP is faked with httpx.MockTransport.
"""

import pytest
from datetime import date, datetime, timezone

import httpx

from config import TrackerConfig
from ingestion.base import ParseContext
from ingestion.golemio import GolemioSource, map_route_type
from legs.types import Mode

UTC = timezone.utc


def _departure(**overrides):
    departure = {
        "stop_id": "U1040Z101P",
        "platform_code": "1",
        "vehicle_registration_number": "9412",
        "departure_timestamp": {
            "scheduled": "2025-10-07T00:10:00+02:00",
            "predicted": "2025-10-07T00:12:00+02:00",
        },
        "route": {"short_name": "22", "type": 0},
        "trip": {"id": "22_1234_251006", "headsign": "Bílá Hora"},
    }
    departure.update(overrides)
    return departure


def _payload(*departures):
    return {
        "stops": [{"stop_id": "U1040Z101P", "stop_name": "Náměstí Míru"}],
        "departures": list(departures),
    }


@pytest.fixture
def source():
    return GolemioSource(
        TrackerConfig(golemio_api_token="token", monitored_stops=("U1040Z101P",), time_window_minutes=90)
    )


class TestParse:
    def test_fields(self, source):
        [leg] = source.parse(_payload(_departure()), ParseContext())
        assert leg.mode == Mode.TRAM
        assert leg.trip_id == "22_1234_251006"
        assert leg.source == "golemio"
        assert leg.origin_code == "U1040Z101P"
        assert leg.origin_name == "Náměstí Míru"
        assert leg.dest_code == leg.dest_name == leg.headsign == "Bílá Hora"
        assert leg.dep_scheduled == datetime(2025, 10, 6, 22, 10, tzinfo=UTC)
        assert leg.dep_estimated == datetime(2025, 10, 6, 22, 12, tzinfo=UTC)
        assert leg.platform == "1"
        assert leg.vehicle_id == "9412"
        assert leg.route_short_name == "22"

    def test_service_date_is_local(self, source):
        [leg] = source.parse(_payload(_departure()), ParseContext())
        assert leg.service_date == date(2025, 10, 7)

    def test_unknown_stop_name_falls_back_to_id(self, source):
        payload = {"stops": [], "departures": [_departure()]}
        [leg] = source.parse(payload, ParseContext())
        assert leg.origin_name == "U1040Z101P"

    @pytest.mark.parametrize("missing", ["route", "trip", "departure_timestamp"])
    def test_incomplete_departure_dropped(self, source, missing):
        context = ParseContext()
        assert source.parse(_payload(_departure(**{missing: None})), context) == []
        assert context.dropped == 1

    def test_bad_timestamp_dropped(self, source):
        context = ParseContext()
        departure = _departure(departure_timestamp={"scheduled": "later", "predicted": None})
        assert source.parse(_payload(departure), context) == []
        assert context.dropped == 1

    @pytest.mark.parametrize(
        "overrides",
        [{"trip": "22_1234_251006"}, {"route": ["22"]}, {"departure_timestamp": "2025-10-07T00:10:00+02:00"}],
    )
    def test_non_object_block_dropped(self, source, overrides):
        context = ParseContext()
        assert source.parse(_payload(_departure(**overrides)), context) == []
        assert context.dropped == 1

    def test_null_departure_and_stop_skipped(self, source):
        payload = _payload(None, _departure())
        payload["stops"].insert(0, None)
        context = ParseContext()
        [leg] = source.parse(payload, context)
        assert leg.origin_name == "Náměstí Míru"
        assert context.dropped == 1


class TestMapRouteType:
    @pytest.mark.parametrize(
        "route_type, mode",
        [(0, Mode.TRAM), (1, Mode.METRO), (2, Mode.TRAIN), (3, Mode.BUS), (7, Mode.BUS), ("x", Mode.BUS), (None, Mode.BUS)],
    )
    def test_mapping(self, route_type, mode):
        assert map_route_type(route_type) == mode


class TestFetchLegs:
    @pytest.mark.anyio
    async def test_request_shape(self, source):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_payload(_departure()))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            legs = await source.fetch_legs(client, ParseContext())

        assert len(legs) == 1
        [request] = seen
        assert request.url.path.endswith("/pid/departureboards")
        assert request.headers["X-Access-Token"] == "token"
        assert dict(request.url.params) == {
            "ids": "U1040Z101P", "minutesBefore": "0", "minutesAfter": "90", "limit": "50",
        }

    @pytest.mark.anyio
    async def test_transport_error_counts_failure(self, source):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        context = ParseContext()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await source.fetch_legs(client, context) == []
        assert context.failed_fetches == 1

    @pytest.mark.anyio
    async def test_malformed_stop_payload_does_not_abort_others(self):
        source = GolemioSource(
            TrackerConfig(golemio_api_token="token", monitored_stops=("U1", "U1040Z101P"))
        )

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params["ids"] == "U1":
                return httpx.Response(200, json={"departures": 7})
            return httpx.Response(200, json=_payload(_departure()))

        context = ParseContext()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            legs = await source.fetch_legs(client, context)

        assert [leg.trip_id for leg in legs] == ["22_1234_251006"]
        assert context.failed_fetches == 1

    @pytest.mark.anyio
    async def test_no_monitored_stops(self):
        source = GolemioSource(TrackerConfig(golemio_api_token="token"))
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
            assert await source.fetch_legs(client, ParseContext()) == []
