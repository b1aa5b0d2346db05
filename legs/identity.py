"""
Identity resolution: does an incoming leg already exist in the store?

Resolution order:
  1. Natural key — exact (trip_id, service_date) match.
  2. Flights only — code-share heuristic: same service date, scheduled
     departure and destination, with compatible gates.  Marketing carriers
     sometimes report a flight without naming its operating carrier, so the
     natural key alone cannot catch every code-share.
  3. Otherwise the leg is new.

Gate compatibility: both gates unset → compatible; both set and equal →
compatible; anything else (two different gates, or only one side known) →
distinct legs.
"""

import logging

from db.models import LegRecord
from db.store import LegStore
from legs.types import Mode, NormalizedLeg

logger = logging.getLogger(__name__)


def gates_compatible(a: str | None, b: str | None) -> bool:
    a = (a or "").strip()
    b = (b or "").strip()
    if not a and not b:
        return True
    return bool(a) and bool(b) and a == b


class IdentityResolver:
    def __init__(self, store: LegStore) -> None:
        self.store = store

    def resolve_by_natural_key(self, trip_id: str, service_date: str) -> LegRecord | None:
        matches = self.store.find_by_fields({"trip_id": trip_id, "service_date": service_date})
        if len(matches) > 1:
            logger.warning(
                "Natural key (%s, %s) matches %d legs; using id %d.",
                trip_id, service_date, len(matches), matches[0].id,
            )
        return matches[0] if matches else None

    def resolve_by_codeshare(self, leg: NormalizedLeg) -> LegRecord | None:
        if leg.mode != Mode.FLIGHT or leg.dep_scheduled is None:
            return None

        logger.debug(
            "Looking for code-share: gate=%s, dest=%s, time=%s",
            leg.gate, leg.dest_code, leg.dep_scheduled.isoformat(),
        )
        candidates = self.store.find_by_fields({
            "service_date": leg.service_date.isoformat(),
            "dep_sched_at": leg.dep_scheduled,
            "dest": leg.dest_code,
        })
        compatible = [
            record for record in candidates
            if gates_compatible(leg.gate, self.store.raw_field(record, "gate"))
        ]
        if not compatible:
            return None
        if len(compatible) > 1:
            # two unrelated flights can share destination and minute with no gate info
            logger.warning(
                "Ambiguous code-share match for %s (dest=%s, dep=%s, gate=%s): "
                "candidate legs %s; merging into lowest id %d.",
                leg.route_short_name, leg.dest_code, leg.dep_scheduled.isoformat(), leg.gate,
                [r.id for r in compatible], compatible[0].id,
            )
        return compatible[0]

    def resolve(self, leg: NormalizedLeg) -> LegRecord | None:
        trip_id, service_date = leg.natural_key
        record = self.resolve_by_natural_key(trip_id, service_date)
        if record is not None:
            return record

        if leg.mode == Mode.FLIGHT:
            record = self.resolve_by_codeshare(leg)
            if record is not None:
                logger.info("Found code-share match for %s: leg %d.", leg.route_short_name, record.id)
            else:
                logger.debug("No code-share match for %s; treating as new.", leg.route_short_name)
        return record
