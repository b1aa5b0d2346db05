"""
SQLAlchemy ORM models for the leg record store.

A leg is a generic record carrying:
  - named attributes (LegField) stored as text; typed encoding lives in
    db/store.py so lookups stay plain "attribute X equals Y" queries
  - category tags (LegTag): mode, "status:<status>", "route:<route>"
  - an append-only history of text posts (LegPost)

Timestamp attributes are stored as fixed-width UTC ISO strings
(YYYY-MM-DDTHH:MM:SSZ), so equality and ordering on the text are exact.
"""

from sqlalchemy import (
    Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class LegRecord(Base):
    __tablename__ = "legs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    category_id = Column(Integer, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    fields = relationship("LegField", back_populates="leg", cascade="all, delete-orphan")
    tags = relationship("LegTag", back_populates="leg", cascade="all, delete-orphan")
    posts = relationship(
        "LegPost", back_populates="leg", cascade="all, delete-orphan",
        order_by="LegPost.post_number",
    )


class LegField(Base):
    __tablename__ = "leg_fields"
    __table_args__ = (
        UniqueConstraint("leg_id", "name", name="uq_leg_fields_leg_name"),
        Index("ix_leg_fields_name_value", "name", "value"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    leg_id = Column(Integer, ForeignKey("legs.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    value = Column(Text)

    leg = relationship("LegRecord", back_populates="fields")


class LegTag(Base):
    __tablename__ = "leg_tags"
    __table_args__ = (UniqueConstraint("leg_id", "name", name="uq_leg_tags_leg_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    leg_id = Column(Integer, ForeignKey("legs.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, index=True, nullable=False)

    leg = relationship("LegRecord", back_populates="tags")


class LegPost(Base):
    """Immutable annotation on a leg's history.  Post 1 is the announcement."""
    __tablename__ = "leg_posts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    leg_id = Column(Integer, ForeignKey("legs.id", ondelete="CASCADE"), index=True, nullable=False)
    post_number = Column(Integer, nullable=False)
    raw = Column(Text, nullable=False)
    cooked = Column(Text)  # HTML rendering, when the author supplied one
    created_at = Column(DateTime(timezone=True), nullable=False)

    leg = relationship("LegRecord", back_populates="posts")
