"""
Status derivation from scheduled vs estimated departure.

The result written at merge time is cached as the leg's status tag; the board
serves that tag and never recomputes it, so derivation must stay pure.
"""

from datetime import datetime

from legs.types import LegStatus, NormalizedLeg


def derive_status(
    dep_scheduled: datetime | None,
    dep_estimated: datetime | None,
    threshold_seconds: int,
) -> LegStatus:
    if dep_scheduled is None or dep_estimated is None:
        return LegStatus.SCHEDULED
    delay_seconds = (dep_estimated - dep_scheduled).total_seconds()
    if delay_seconds > threshold_seconds:
        return LegStatus.DELAYED
    return LegStatus.SCHEDULED


def resolve_status(leg: NormalizedLeg, threshold_seconds: int) -> LegStatus:
    """Explicit source status when present, otherwise the derived one."""
    if leg.status is not None:
        return leg.status
    return derive_status(leg.dep_scheduled, leg.dep_estimated, threshold_seconds)


def delay_minutes(dep_scheduled: datetime | None, dep_estimated: datetime | None) -> int | None:
    if dep_scheduled is None or dep_estimated is None:
        return None
    return int((dep_estimated - dep_scheduled).total_seconds() // 60)
