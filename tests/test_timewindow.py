"""
Unit tests for legs.timewindow — GTFS service-time parsing, ISO timestamp
handling and the two board window comparators.  All pure functions.
"""

import pytest
from datetime import date, datetime, timedelta, timezone

from legs.errors import InvalidTimeFormat, ParseError
from legs.timewindow import (
    departure_sort_key,
    effective_departure,
    in_absolute_window,
    in_time_of_day_window,
    local_date,
    parse_service_time,
    parse_timestamp,
    to_iso,
)

UTC = timezone.utc


# ---------------------------------------------------------------------------
# parse_service_time
# ---------------------------------------------------------------------------

class TestParseServiceTime:
    def test_plain_time(self):
        assert parse_service_time(date(2025, 10, 6), "08:15:30") == datetime(
            2025, 10, 6, 8, 15, 30, tzinfo=UTC
        )

    def test_day_rollover(self):
        # 25:30:00 on the 6th is 01:30 on the 7th
        assert parse_service_time(date(2025, 10, 6), "25:30:00") == datetime(
            2025, 10, 7, 1, 30, tzinfo=UTC
        )

    def test_exactly_midnight_rollover(self):
        assert parse_service_time(date(2025, 10, 6), "24:00:00") == datetime(2025, 10, 7, tzinfo=UTC)

    def test_two_day_rollover(self):
        assert parse_service_time(date(2025, 12, 31), "49:05:00") == datetime(
            2026, 1, 2, 1, 5, tzinfo=UTC
        )

    def test_single_digit_hour(self):
        assert parse_service_time(date(2025, 10, 6), "7:05:00").hour == 7

    def test_result_is_utc_aware(self):
        assert parse_service_time(date(2025, 10, 6), "10:00:00").tzinfo == UTC

    @pytest.mark.parametrize("bad", ["", "25:30", "ab:00:00", "10:60:00", "10:00:61", "-1:00:00", "1:2:3:4"])
    def test_malformed_raises(self, bad):
        with pytest.raises(InvalidTimeFormat):
            parse_service_time(date(2025, 10, 6), bad)

    def test_error_is_parse_error_and_value_error(self):
        with pytest.raises(ParseError):
            parse_service_time(date(2025, 10, 6), "nope")
        with pytest.raises(ValueError):
            parse_service_time(date(2025, 10, 6), "nope")


# ---------------------------------------------------------------------------
# parse_timestamp / to_iso / local_date
# ---------------------------------------------------------------------------

class TestParseTimestamp:
    def test_zulu(self):
        assert parse_timestamp("2025-10-06T14:00:00Z") == datetime(2025, 10, 6, 14, tzinfo=UTC)

    def test_offset_converted_to_utc(self):
        assert parse_timestamp("2025-10-06T14:00:00+02:00") == datetime(2025, 10, 6, 12, tzinfo=UTC)

    def test_naive_taken_as_utc(self):
        assert parse_timestamp("2025-10-06T14:00:00") == datetime(2025, 10, 6, 14, tzinfo=UTC)

    def test_blank_is_none(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("   ") is None

    def test_garbage_raises(self):
        with pytest.raises(InvalidTimeFormat):
            parse_timestamp("not-a-time")


class TestToIso:
    def test_fixed_width_utc(self):
        assert to_iso(datetime(2025, 10, 6, 9, 5, tzinfo=UTC)) == "2025-10-06T09:05:00Z"

    def test_offset_normalised(self):
        tz = timezone(timedelta(hours=2))
        assert to_iso(datetime(2025, 10, 6, 9, 5, tzinfo=tz)) == "2025-10-06T07:05:00Z"

    def test_naive_treated_as_utc(self):
        assert to_iso(datetime(2025, 10, 6, 9, 5)) == "2025-10-06T09:05:00Z"

    def test_none(self):
        assert to_iso(None) is None

    def test_text_order_is_chronological(self):
        times = [datetime(2025, 10, 6, h, tzinfo=UTC) for h in (23, 2, 11)]
        assert sorted(to_iso(t) for t in times) == [to_iso(t) for t in sorted(times)]


class TestLocalDate:
    def test_uses_own_offset(self):
        # 00:30 in Prague is still the 6th in UTC
        assert local_date("2025-10-07T00:30:00+02:00") == date(2025, 10, 7)
        assert parse_timestamp("2025-10-07T00:30:00+02:00").date() == date(2025, 10, 6)

    def test_unparseable_is_none(self):
        assert local_date("garbage") is None
        assert local_date(None) is None


# ---------------------------------------------------------------------------
# Window comparators
# ---------------------------------------------------------------------------

class TestAbsoluteWindow:
    start = datetime(2025, 10, 6, 10, tzinfo=UTC)
    end = datetime(2025, 10, 6, 12, tzinfo=UTC)

    def test_inclusive_bounds(self):
        assert in_absolute_window(self.start, self.start, self.end)
        assert in_absolute_window(self.end, self.start, self.end)

    def test_outside(self):
        assert not in_absolute_window(self.end + timedelta(seconds=1), self.start, self.end)
        assert not in_absolute_window(self.start - timedelta(seconds=1), self.start, self.end)


class TestTimeOfDayWindow:
    now = datetime(2025, 10, 6, 23, 58, tzinfo=UTC)

    def test_wraps_past_midnight(self):
        departure = datetime(2025, 10, 7, 0, 10, tzinfo=UTC)
        assert in_time_of_day_window(departure, self.now, 15)

    def test_just_before_now_is_outside(self):
        departure = datetime(2025, 10, 6, 23, 50, tzinfo=UTC)
        assert not in_time_of_day_window(departure, self.now, 15)

    def test_same_minute_is_inside(self):
        assert in_time_of_day_window(self.now, self.now, 15)

    def test_upper_bound_inclusive(self):
        assert in_time_of_day_window(self.now + timedelta(minutes=15), self.now, 15)
        assert not in_time_of_day_window(self.now + timedelta(minutes=16), self.now, 15)

    def test_date_is_ignored(self):
        # Only the time of day matters: a week later at 00:05 still matches
        departure = datetime(2025, 10, 14, 0, 5, tzinfo=UTC)
        assert in_time_of_day_window(departure, self.now, 15)


class TestEffectiveDeparture:
    sched = datetime(2025, 10, 6, 10, tzinfo=UTC)
    est = datetime(2025, 10, 6, 10, 5, tzinfo=UTC)

    def test_prefers_estimated(self):
        assert effective_departure(self.est, self.sched) == self.est

    def test_falls_back_to_scheduled(self):
        assert effective_departure(None, self.sched) == self.sched

    def test_sort_key_puts_untimed_last(self):
        keys = [departure_sort_key(None, None), departure_sort_key(self.est, self.sched), departure_sort_key(None, self.sched)]
        assert sorted(keys) == [keys[2], keys[1], keys[0]]
