"""Event, EventSource and Performer models."""
from __future__ import annotations

import enum
from datetime import datetime, time

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from quiz_ingest.core.timeutil import utcnow
from quiz_ingest.db import Base, JSONType


class Frequency(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    IRREGULAR = "irregular"


class EventSourceStatus(str, enum.Enum):
    ACTIVE = "active"
    STALE = "stale"


class Performer(Base):
    """Quiz master / host, find-or-create keyed by (name, source_id)."""

    __tablename__ = "performers"
    __table_args__ = (UniqueConstraint("name", "source_id", name="uq_performers_name_source"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sources.id"), nullable=False, index=True
    )
    profile_image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Performer id={self.id} name={self.name!r}>"


class Event(Base):
    """Recurring quiz night. Upsert identity is (venue_id, day_of_week)."""

    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 1 AND 7", name="ck_events_day_of_week"),
        CheckConstraint(
            "entry_fee_cents IS NULL OR entry_fee_cents >= 0", name="ck_events_entry_fee"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    venue_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(512), nullable=True, comment="Raw listing title")
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False, comment="1=Monday … 7=Sunday")
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), default=Frequency.WEEKLY.value, nullable=False)
    entry_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hero_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    performer_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("performers.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Event id={self.id} venue={self.venue_id} dow={self.day_of_week}>"


class EventSource(Base):
    """Provenance: which source last confirmed an event, and when."""

    __tablename__ = "event_sources"
    __table_args__ = (UniqueConstraint("event_id", "source_id", name="uq_event_sources_event_source"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sources.id"), nullable=False, index=True
    )
    source_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=EventSourceStatus.ACTIVE.value, nullable=False
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<EventSource event={self.event_id} source={self.source_id}>"
