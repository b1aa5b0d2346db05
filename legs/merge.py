"""
Merge engine: create a new stored leg or fold a fresh observation into an
existing one.

Precedence rules on update:
  - Flights accumulate marketing codes in route_short_name ("AA100 / BA900");
    existing codes keep their order and a code already present is not re-added.
  - Every other scalar is last-write-wins; the incoming leg is always the
    freshest observation.  The identity attributes (trip_id, service_date) of
    the stored leg are kept, since a code-share match may arrive under a
    different trip_id.
  - Status: explicit source status wins, otherwise derived from timings.  The
    previous status is read from the stored status tag.
  - Only a transition *into* delayed posts a status-change notice.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from config import TrackerConfig
from db.models import LegRecord
from db.store import LegStore
from legs.errors import ConfigurationMissing, MergeError
from legs.identity import IdentityResolver
from legs.posts import (
    build_announcement, build_details, build_status_change, build_title, split_route_codes,
)
from legs.status import delay_minutes, resolve_status
from legs.timewindow import utcnow
from legs.types import (
    ROUTE_TAG_PREFIX, STATUS_TAG_PREFIX, LegStatus, Mode, NormalizedLeg, StoredLeg, leg_to_fields,
)

logger = logging.getLogger(__name__)

_IDENTITY_FIELDS = ("trip_id", "service_date")


def merge_route_codes(existing: str | None, incoming: str | None) -> str | None:
    """Append `incoming` to the '/'-separated codes in `existing` unless already present."""
    codes = split_route_codes(existing)
    if not incoming:
        return " / ".join(codes) or None
    if incoming in codes:
        return " / ".join(codes)
    codes.append(incoming)
    return " / ".join(codes)


def build_tags(mode: str, status: str, route_short_name: str | None) -> list[str]:
    tags = [mode, f"{STATUS_TAG_PREFIX}{status}"]
    if route_short_name:
        tags.append(f"{ROUTE_TAG_PREFIX}{route_short_name}")
    return tags


class MergeEngine:
    def __init__(
        self,
        store: LegStore,
        config: TrackerConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self.resolver = IdentityResolver(store)

    def create_or_update(self, leg: NormalizedLeg) -> tuple[StoredLeg, bool]:
        """
        Resolve the leg's identity and create or update accordingly.

        Returns:
            (stored leg, created) — created is True for a new leg.

        Raises:
            ConfigurationMissing: a new leg's mode has no category configured.
            MergeError: the store rejected the write.
        """
        try:
            record = self.resolver.resolve(leg)
            if record is None:
                return self.create_leg(leg), True
            return self.update_leg(record, leg), False
        except SQLAlchemyError as exc:
            trip_id, service_date = leg.natural_key
            raise MergeError(trip_id, service_date, str(exc)) from exc

    def create_leg(self, leg: NormalizedLeg) -> StoredLeg:
        category_id = self.config.category_for(leg.mode.value)
        if not category_id:
            raise ConfigurationMissing(f"no category configured for mode {leg.mode.value!r}")

        status = resolve_status(leg, self.config.delay_threshold_seconds)
        record = self.store.create(
            title=build_title(leg),
            category_id=category_id,
            fields=leg_to_fields(leg),
            tags=build_tags(leg.mode.value, status.value, leg.route_short_name),
            now=self.clock(),
        )
        self.store.append_post(record, build_announcement(leg))
        self._ensure_details_post(record, leg, leg.route_short_name)

        logger.info(
            "Created leg %d: %s (%s, %s) status=%s",
            record.id, record.title, leg.trip_id, leg.service_date, status.value,
        )
        return self.store.to_stored_leg(record)

    def update_leg(self, record: LegRecord, leg: NormalizedLeg) -> StoredLeg:
        stored = self.store.to_stored_leg(record)
        fields = leg_to_fields(leg)
        for name in _IDENTITY_FIELDS:
            fields.pop(name)

        route_short_name = leg.route_short_name
        if leg.mode == Mode.FLIGHT:
            route_short_name = merge_route_codes(stored.route_short_name, leg.route_short_name)
            if route_short_name != stored.route_short_name:
                logger.info(
                    "Code-share merge: %s + %s = %s",
                    stored.route_short_name, leg.route_short_name, route_short_name,
                )
            fields["route_short_name"] = route_short_name

        old_status = stored.status_tag
        new_status = resolve_status(leg, self.config.delay_threshold_seconds)

        self.store.update_fields(record, fields, now=self.clock())
        self.store.set_tags(record, build_tags(leg.mode.value, new_status.value, route_short_name))

        if old_status != new_status.value and new_status == LegStatus.DELAYED:
            minutes = delay_minutes(leg.dep_scheduled, leg.dep_estimated)
            self.store.append_post(record, build_status_change(old_status, new_status.value, minutes))
            logger.info("Leg %d status %s → %s.", record.id, old_status, new_status.value)

        self._ensure_details_post(record, leg, route_short_name)
        return self.store.to_stored_leg(record)

    def _ensure_details_post(self, record: LegRecord, leg: NormalizedLeg, route_short_name: str | None) -> None:
        """Add the details/schedule post once; posts are never edited."""
        if any(p.cooked for p in record.posts):
            return
        doc = build_details(leg, route_short_name)
        if doc is None:
            return
        self.store.append_post(record, doc.to_markdown(), cooked=doc.to_html())
