"""
Leg record store: the persistence substrate behind ingestion and the board.

The store deliberately exposes only what a generic document store offers:
create/get/update of a record by id, typed named attributes, tag membership,
append-only posts, "records where attribute X equals Y" and "records tagged
T".  Nothing above this layer issues joins of its own.

Attribute typing follows a registry (name → "string" | "datetime" | "json")
handed to the store; values are encoded to text on write and decoded on read.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from db.models import LegField, LegPost, LegRecord, LegTag
from legs.timewindow import parse_timestamp, to_iso, utcnow
from legs.types import LEG_FIELD_TYPES, StoredLeg

logger = logging.getLogger(__name__)


class LegStore:
    def __init__(self, session: Session, field_types: dict[str, str] | None = None) -> None:
        self.session = session
        self.field_types = LEG_FIELD_TYPES if field_types is None else field_types

    # ------------------------------------------------------------------
    # Attribute encoding
    # ------------------------------------------------------------------

    def encode(self, name: str, value: Any) -> str | None:
        if value is None:
            return None
        kind = self.field_types.get(name, "string")
        if kind == "datetime":
            return to_iso(value) if isinstance(value, datetime) else str(value)
        if kind == "json":
            return json.dumps(value)
        return str(value)

    def decode(self, name: str, text: str | None) -> Any:
        """
        Decode a stored attribute.

        Raises:
            InvalidTimeFormat: a datetime attribute holds an unparseable value.
            ValueError: a JSON attribute holds malformed JSON.
        """
        if text is None:
            return None
        kind = self.field_types.get(name, "string")
        if kind == "datetime":
            return parse_timestamp(text)
        if kind == "json":
            return json.loads(text)
        return text

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        category_id: int | None,
        fields: dict[str, Any],
        tags: Iterable[str] = (),
        now: datetime | None = None,
    ) -> LegRecord:
        now = now or utcnow()
        record = LegRecord(title=title, category_id=category_id, created_at=now, updated_at=now)
        self.session.add(record)
        for name, value in fields.items():
            encoded = self.encode(name, value)
            if encoded is not None:
                record.fields.append(LegField(name=name, value=encoded))
        for tag in dict.fromkeys(tags):
            record.tags.append(LegTag(name=tag))
        self.session.flush()
        return record

    def get(self, leg_id: int) -> LegRecord | None:
        return self.session.get(LegRecord, leg_id)

    def update_fields(self, record: LegRecord, fields: dict[str, Any], now: datetime | None = None) -> None:
        """Merge attributes into a record; a None value removes the attribute."""
        existing = {f.name: f for f in record.fields}
        for name, value in fields.items():
            encoded = self.encode(name, value)
            current = existing.get(name)
            if encoded is None:
                if current is not None:
                    record.fields.remove(current)
            elif current is None:
                record.fields.append(LegField(name=name, value=encoded))
            else:
                current.value = encoded
        record.updated_at = now or utcnow()
        self.session.flush()

    def field_values(self, record: LegRecord) -> dict[str, Any]:
        return {f.name: self.decode(f.name, f.value) for f in record.fields}

    def raw_field(self, record: LegRecord, name: str) -> str | None:
        return next((f.value for f in record.fields if f.name == name), None)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def tag_names(self, record: LegRecord) -> list[str]:
        return [t.name for t in record.tags]

    def set_tags(self, record: LegRecord, names: Iterable[str]) -> None:
        """Replace the record's tag set with exactly `names`."""
        wanted = list(dict.fromkeys(names))
        for tag in list(record.tags):
            if tag.name not in wanted:
                record.tags.remove(tag)
        present = {t.name for t in record.tags}
        for name in wanted:
            if name not in present:
                record.tags.append(LegTag(name=name))
        self.session.flush()

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    def append_post(self, record: LegRecord, raw: str, cooked: str | None = None) -> LegPost:
        next_number = max((p.post_number for p in record.posts), default=0) + 1
        post = LegPost(post_number=next_number, raw=raw, cooked=cooked, created_at=utcnow())
        record.posts.append(post)
        self.session.flush()
        return post

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_fields(
        self,
        criteria: dict[str, Any],
        category_ids: Iterable[int] | None = None,
    ) -> list[LegRecord]:
        """Records whose attributes equal every criterion, lowest id first."""
        query = self.session.query(LegRecord)
        for name, value in criteria.items():
            encoded = self.encode(name, value)
            if encoded is None:
                has_value = select(LegField.leg_id).where(
                    LegField.name == name, LegField.value.isnot(None)
                )
                query = query.filter(LegRecord.id.notin_(has_value))
            else:
                matching = select(LegField.leg_id).where(
                    LegField.name == name, LegField.value == encoded
                )
                query = query.filter(LegRecord.id.in_(matching))
        if category_ids is not None:
            query = query.filter(LegRecord.category_id.in_(list(category_ids)))
        return (
            query.options(selectinload(LegRecord.fields), selectinload(LegRecord.tags))
            .order_by(LegRecord.id.asc())
            .all()
        )

    def find_tagged(
        self,
        tag: str | None = None,
        category_ids: Iterable[int] | None = None,
        with_field: str | None = None,
        include_posts: bool = False,
    ) -> list[LegRecord]:
        """
        Records tagged `tag` (any tag when None), optionally restricted to
        categories and to records carrying attribute `with_field`.  Fields and
        tags (and posts, on request) are eager-loaded in a fixed number of
        queries regardless of result size.
        """
        query = self.session.query(LegRecord)
        if tag is not None:
            tagged = select(LegTag.leg_id).where(LegTag.name == tag)
            query = query.filter(LegRecord.id.in_(tagged))
        if category_ids is not None:
            query = query.filter(LegRecord.category_id.in_(list(category_ids)))
        if with_field is not None:
            has_field = select(LegField.leg_id).where(LegField.name == with_field)
            query = query.filter(LegRecord.id.in_(has_field))
        options = [selectinload(LegRecord.fields), selectinload(LegRecord.tags)]
        if include_posts:
            options.append(selectinload(LegRecord.posts))
        return query.options(*options).order_by(LegRecord.id.asc()).all()

    # ------------------------------------------------------------------
    # Conversion / housekeeping
    # ------------------------------------------------------------------

    def to_stored_leg(self, record: LegRecord) -> StoredLeg:
        return StoredLeg.from_parts(
            record_id=record.id,
            title=record.title,
            category_id=record.category_id,
            fields=self.field_values(record),
            tags=self.tag_names(record),
            created_at=_as_utc(record.created_at),
            updated_at=_as_utc(record.updated_at),
        )

    def delete_departed_before(self, cutoff: datetime) -> int:
        """Delete legs scheduled to depart before `cutoff`.  Returns the count."""
        stale_ids = select(LegField.leg_id).where(
            LegField.name == "dep_sched_at", LegField.value < to_iso(cutoff)
        )
        records = self.session.query(LegRecord).filter(LegRecord.id.in_(stale_ids)).all()
        for record in records:
            self.session.delete(record)
        self.session.flush()
        logger.info("Deleted %d legs departed before %s.", len(records), to_iso(cutoff))
        return len(records)


def _as_utc(dt: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
