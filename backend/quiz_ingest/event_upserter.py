"""Idempotent Event + EventSource upsert.

An Event is identified by ``(venue_id, day_of_week)``. Re-ingesting the same
listing touches nothing but its EventSource ``last_seen_at``.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quiz_ingest.core.timeutil import as_utc, utcnow
from quiz_ingest.db import insert_or_conflict
from quiz_ingest.errors import ConflictError
from quiz_ingest.metrics import EVENT_UPSERTS_TOTAL
from quiz_ingest.models.event import Event, EventSource, EventSourceStatus, Performer
from quiz_ingest.models.location import Venue
from quiz_ingest.schemas.listing import EventInput

logger = logging.getLogger(__name__)

# Fields whose change counts as a real update of the event.
CHANGE_FIELDS = ("start_time", "frequency", "entry_fee_cents", "description", "hero_image_url")


class UpsertAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    PERFORMER_UPDATED = "performer_updated"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class UpsertResult:
    event: Event
    event_source: EventSource
    action: UpsertAction
    changed_fields: tuple[str, ...] = ()


def _incoming_values(data: EventInput) -> dict[str, Any]:
    return {
        "start_time": data.start_time,
        "frequency": data.frequency.value,
        "entry_fee_cents": data.entry_fee_cents,
        "description": data.description,
        "hero_image_url": data.hero_image_url,
    }


def diff_event(event: Event, data: EventInput) -> dict[str, Any]:
    """Fields of the change set whose incoming value differs from the stored one.

    A missing image reference means "not attached this time" and never clears
    a stored one.
    """
    incoming = _incoming_values(data)
    changes = {name: incoming[name] for name in CHANGE_FIELDS if getattr(event, name) != incoming[name]}
    if incoming["hero_image_url"] is None:
        changes.pop("hero_image_url", None)
    return changes


def venue_lock_stmt(venue_id: int):
    return select(Venue.id).where(Venue.id == venue_id).with_for_update()


async def lock_venue(session: AsyncSession, venue_id: int) -> None:
    """Row-lock the venue so concurrent upserts for it run one after another.

    Locking the event row alone is not enough: before the first event for a
    (venue, day) exists there is nothing to lock.
    """
    await session.execute(venue_lock_stmt(venue_id))


async def find_event(session: AsyncSession, venue_id: int, day_of_week: int) -> Event | None:
    stmt = (
        select(Event)
        .where(Event.venue_id == venue_id, Event.day_of_week == day_of_week)
        .order_by(Event.id)
        .limit(1)
        .with_for_update()
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_or_create_performer(
    session: AsyncSession,
    name: str,
    source_id: int,
    profile_image: str | None = None,
) -> Performer:
    stmt = select(Performer).where(Performer.name == name, Performer.source_id == source_id)
    performer = (await session.execute(stmt)).scalar_one_or_none()
    if performer is None:
        performer = Performer(name=name, source_id=source_id, profile_image=profile_image)
        try:
            await insert_or_conflict(session, performer)
            return performer
        except ConflictError:
            performer = (await session.execute(stmt)).scalar_one()
    if profile_image and performer.profile_image != profile_image:
        performer.profile_image = profile_image
        await session.flush()
    return performer


async def upsert_event_source(
    session: AsyncSession,
    event: Event,
    source_id: int,
    *,
    source_url: str | None,
    metadata: dict[str, Any] | None,
    now: datetime,
) -> EventSource:
    """One provenance row per (event, source); ``last_seen_at`` only moves forward."""
    stmt = select(EventSource).where(EventSource.event_id == event.id, EventSource.source_id == source_id)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        row = EventSource(
            event_id=event.id,
            source_id=source_id,
            source_url=source_url,
            metadata_json=metadata,
            status=EventSourceStatus.ACTIVE.value,
            last_seen_at=now,
        )
        try:
            await insert_or_conflict(session, row)
            return row
        except ConflictError:
            row = (await session.execute(stmt)).scalar_one()

    previous = as_utc(row.last_seen_at)
    seen_at = now if previous is None or now > previous else previous + timedelta(microseconds=1)
    if row.source_url != source_url and source_url:
        row.source_url = source_url
    if metadata is not None and row.metadata_json != metadata:
        row.metadata_json = metadata
    if row.status != EventSourceStatus.ACTIVE.value:
        row.status = EventSourceStatus.ACTIVE.value
    row.last_seen_at = seen_at
    await session.flush()
    return row


async def upsert_event(
    session: AsyncSession,
    venue: Venue,
    data: EventInput,
    source_id: int,
    *,
    source_url: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> UpsertResult:
    now = now or utcnow()
    await lock_venue(session, venue.id)
    event = await find_event(session, venue.id, data.day_of_week)

    if event is None:
        event = Event(
            venue_id=venue.id,
            name=data.name,
            day_of_week=data.day_of_week,
            performer_id=data.performer_id,
            **_incoming_values(data),
        )
        session.add(event)
        await session.flush()
        action = UpsertAction.CREATED
        changed: tuple[str, ...] = ()
    else:
        changes = diff_event(event, data)
        if changes:
            for field_name, value in changes.items():
                setattr(event, field_name, value)
            if data.performer_id is not None and event.performer_id != data.performer_id:
                event.performer_id = data.performer_id
            action = UpsertAction.UPDATED
        elif data.performer_id is not None and event.performer_id != data.performer_id:
            event.performer_id = data.performer_id
            action = UpsertAction.PERFORMER_UPDATED
        else:
            action = UpsertAction.UNCHANGED
        changed = tuple(changes)
        if action != UpsertAction.UNCHANGED:
            await session.flush()

    event_source = await upsert_event_source(
        session, event, source_id, source_url=source_url, metadata=metadata, now=now
    )
    EVENT_UPSERTS_TOTAL.labels(action=action.value).inc()
    logger.debug(
        "Event upserted",
        extra={"event_id": event.id, "venue_id": venue.id, "action": action.value, "changed": list(changed)},
    )
    return UpsertResult(event=event, event_source=event_source, action=action, changed_fields=changed)
