"""
Date/time helpers for GTFS service times and board windows.

GTFS time fields (arrival_time, departure_time) are HH:MM:SS strings relative
to the service date, and GTFS allows values >= 24:00:00 for trips that
cross midnight: "25:30:00" on 2025-10-06 is 01:30 on 2025-10-07.

All absolute timestamps handled here are timezone-aware UTC datetimes.
"""

from datetime import date, datetime, time, timedelta, timezone

from legs.errors import InvalidTimeFormat

MINUTES_PER_DAY = 24 * 60


def parse_service_time(service_date: date, hms: str) -> datetime:
    """
    Convert a GTFS HH:MM:SS string on a service date to a UTC datetime.

    Raises:
        InvalidTimeFormat: the string is blank, not three integer parts, or
            has minutes/seconds out of range.
    """
    try:
        h, m, s = (int(part) for part in hms.strip().split(":"))
    except (ValueError, AttributeError) as exc:
        raise InvalidTimeFormat(f"invalid GTFS time {hms!r}") from exc
    if h < 0 or not 0 <= m < 60 or not 0 <= s < 60:
        raise InvalidTimeFormat(f"invalid GTFS time {hms!r}")

    day_offset, hours = divmod(h, 24)
    base = datetime.combine(service_date, time(hours, m, s), tzinfo=timezone.utc)
    return base + timedelta(days=day_offset)


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Blank input returns None.  Naive timestamps are taken to be UTC.

    Raises:
        InvalidTimeFormat: the value is not a valid ISO-8601 timestamp.
    """
    if value is None or not str(value).strip():
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidTimeFormat(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Fixed-width UTC rendering (YYYY-MM-DDTHH:MM:SSZ); sorts chronologically as text."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def effective_departure(estimated: datetime | None, scheduled: datetime | None) -> datetime | None:
    return estimated if estimated is not None else scheduled


def in_absolute_window(t: datetime, start: datetime, end: datetime) -> bool:
    return start <= t <= end


def minutes_of_day(dt: datetime) -> int:
    return dt.hour * 60 + dt.minute


def in_time_of_day_window(departure: datetime, now: datetime, window_minutes: int) -> bool:
    """
    True when the departure's time of day falls within window_minutes after
    now's time of day, wrapping across midnight (00:10 is 12 minutes after
    23:58).  Both datetimes are compared in UTC.
    """
    dep_minutes = minutes_of_day(departure.astimezone(timezone.utc))
    now_minutes = minutes_of_day(now.astimezone(timezone.utc))
    diff = (dep_minutes - now_minutes) % MINUTES_PER_DAY
    return 0 <= diff <= window_minutes


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_date(value: str | None) -> date | None:
    """
    Calendar date of an ISO-8601 timestamp in its own UTC offset
    ("2025-10-06T23:30:00+02:00" → 2025-10-06), or None if unparseable.
    """
    if not value or not str(value).strip():
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


_FAR_PAST = datetime.min.replace(tzinfo=timezone.utc)


def departure_sort_key(estimated: datetime | None, scheduled: datetime | None) -> tuple[bool, datetime]:
    """Board ordering: soonest effective departure first, legs without times last."""
    dep = effective_departure(estimated, scheduled)
    return (dep is None, dep or _FAR_PAST)
