"""Venue merge / preview / rollback with an append-only audit log.

Used by the admin API. Functions work inside the caller's session and only
flush; the caller commits (or rolls back) the whole action.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from quiz_ingest.core.timeutil import as_utc, utcnow
from quiz_ingest.errors import FatalDataError
from quiz_ingest.metrics import VENUE_MERGE_ACTIONS_TOTAL
from quiz_ingest.models.event import Event
from quiz_ingest.models.location import Venue
from quiz_ingest.models.merge import MergeAction, MergeLog
from quiz_ingest.schemas.options import MergeOptions, RollbackOptions

logger = logging.getLogger(__name__)

# Venue profile fields compared, merged and restored on rollback.
PROFILE_FIELDS = ("name", "address", "postcode", "phone", "website", "place_id", "latitude", "longitude")
TEXT_FIELDS = ("name", "address", "postcode", "phone", "website")


@dataclass(slots=True)
class MergePreview:
    primary_venue_id: int
    secondary_venue_id: int
    events_to_migrate: list[dict[str, Any]]
    metadata_conflicts: list[dict[str, Any]]
    estimated_changes: dict[str, Any]
    recommended_action: str
    preview_log_id: int | None = None


@dataclass(slots=True)
class MergeResult:
    log_id: int
    primary_venue_id: int
    secondary_venue_id: int
    events_migrated: int
    updated_fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RollbackResult:
    log_id: int
    original_log_id: int
    primary_venue_id: int
    secondary_venue_id: int
    events_restored: int


def venue_snapshot(venue: Venue) -> dict[str, Any]:
    return {name: getattr(venue, name) for name in PROFILE_FIELDS}


def _has_conflict(a: Any, b: Any) -> bool:
    return a is not None and b is not None and a != b


def analyze_metadata_conflicts(primary: Venue, secondary: Venue) -> list[dict[str, Any]]:
    return [
        {"field": name, "primary": getattr(primary, name), "secondary": getattr(secondary, name)}
        for name in TEXT_FIELDS
        if _has_conflict(getattr(primary, name), getattr(secondary, name))
    ]


def _better_value(primary: Any, secondary: Any) -> Any:
    if primary is None:
        return secondary
    if secondary is None:
        return primary
    return secondary if len(str(secondary)) > len(str(primary)) else primary


def merged_attributes(primary: Venue, secondary: Venue, strategy: str) -> dict[str, Any]:
    """Attribute updates for ``primary``.

    prefer_primary fills only what primary lacks; prefer_secondary takes every
    value secondary has; combine keeps the more complete (longer) text.
    Coordinates move as a pair.
    """
    attrs: dict[str, Any] = {}
    for name in TEXT_FIELDS + ("place_id",):
        ours, theirs = getattr(primary, name), getattr(secondary, name)
        if strategy == "prefer_secondary":
            value = theirs if theirs is not None else ours
        elif strategy == "combine" and name != "place_id":
            value = _better_value(ours, theirs)
        else:
            value = ours if ours is not None else theirs
        if value != ours:
            attrs[name] = value

    take_coords = secondary.coordinates is not None and (
        primary.coordinates is None or strategy == "prefer_secondary"
    )
    if take_coords and secondary.coordinates != primary.coordinates:
        attrs["latitude"] = secondary.latitude
        attrs["longitude"] = secondary.longitude
    return attrs


def recommend(conflicts: list[dict[str, Any]], event_count: int) -> str:
    if not conflicts and event_count <= 10:
        return "safe"
    if len(conflicts) <= 3 and event_count <= 50:
        return "review_conflicts"
    return "manual_review"


async def _load_pair(session: AsyncSession, primary_id: int, secondary_id: int) -> tuple[Venue, Venue]:
    if primary_id == secondary_id:
        raise FatalDataError("cannot merge a venue into itself", reason="self_merge")
    venues = {
        v.id: v
        for v in (await session.execute(select(Venue).where(Venue.id.in_([primary_id, secondary_id])))).scalars()
    }
    for venue_id in (primary_id, secondary_id):
        venue = venues.get(venue_id)
        if venue is None:
            raise FatalDataError(f"venue {venue_id} not found", reason="venue_not_found")
        if venue.is_deleted:
            raise FatalDataError(f"venue {venue_id} is already deleted", reason="venue_deleted")
    return venues[primary_id], venues[secondary_id]


async def _events_of(session: AsyncSession, venue_id: int) -> list[Event]:
    stmt = select(Event).where(Event.venue_id == venue_id).order_by(Event.id)
    return list((await session.execute(stmt)).scalars().all())


def _event_summary(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "name": event.name,
        "day_of_week": event.day_of_week,
        "start_time": event.start_time.isoformat() if event.start_time else None,
    }


async def _append_log(
    session: AsyncSession,
    action: MergeAction,
    primary_id: int,
    secondary_id: int,
    metadata: dict[str, Any],
    *,
    performed_by: str | None,
    notes: str | None,
) -> MergeLog:
    if primary_id == secondary_id:
        raise FatalDataError("merge log needs two distinct venues", reason="self_merge")
    log = MergeLog(
        action_type=action.value,
        primary_venue_id=primary_id,
        secondary_venue_id=secondary_id,
        metadata_json=metadata,
        performed_by=performed_by,
        notes=notes,
    )
    session.add(log)
    await session.flush()
    VENUE_MERGE_ACTIONS_TOTAL.labels(action_type=action.value).inc()
    return log


async def preview_merge(
    session: AsyncSession,
    primary_id: int,
    secondary_id: int,
    options: MergeOptions | None = None,
) -> MergePreview:
    """Diff of what a merge would do. Persists nothing unless ``log_preview`` is set."""
    options = options or MergeOptions()
    primary, secondary = await _load_pair(session, primary_id, secondary_id)
    events = await _events_of(session, secondary.id)
    conflicts = analyze_metadata_conflicts(primary, secondary)
    attrs = merged_attributes(primary, secondary, options.metadata_strategy)
    preview = MergePreview(
        primary_venue_id=primary.id,
        secondary_venue_id=secondary.id,
        events_to_migrate=[_event_summary(e) for e in events],
        metadata_conflicts=conflicts,
        estimated_changes={
            "events_migrated": len(events),
            "metadata_conflicts": len(conflicts),
            "fields_updated": sorted(attrs),
            "venue_soft_deleted": True,
        },
        recommended_action=recommend(conflicts, len(events)),
    )
    if options.log_preview:
        log = await _append_log(
            session,
            MergeAction.PREVIEW,
            primary.id,
            secondary.id,
            {
                "events_to_migrate": [e.id for e in events],
                "metadata_conflicts": conflicts,
                "recommended_action": preview.recommended_action,
                "metadata_strategy": options.metadata_strategy,
            },
            performed_by=options.performed_by,
            notes=options.notes,
        )
        preview.preview_log_id = log.id
    return preview


async def merge_venues(
    session: AsyncSession,
    primary_id: int,
    secondary_id: int,
    options: MergeOptions | None = None,
) -> MergeResult | MergePreview:
    """Move secondary's events to primary, soft-delete secondary, log the merge."""
    options = options or MergeOptions()
    if options.dry_run:
        return await preview_merge(session, primary_id, secondary_id, options)

    primary, secondary = await _load_pair(session, primary_id, secondary_id)
    primary_before = venue_snapshot(primary)
    secondary_before = venue_snapshot(secondary)

    events = await _events_of(session, secondary.id)
    moved_ids = [e.id for e in events]
    for event in events:
        event.venue_id = primary.id

    attrs = merged_attributes(primary, secondary, options.metadata_strategy)
    if "place_id" in attrs and attrs["place_id"] == secondary.place_id:
        # place_id is unique; release it from the absorbed venue first.
        secondary.place_id = None
        await session.flush()
    for name, value in attrs.items():
        setattr(primary, name, value)

    secondary.deleted_at = utcnow()
    secondary.merged_into_id = primary.id
    secondary.deleted_by = options.performed_by
    await session.flush()

    log = await _append_log(
        session,
        MergeAction.MERGE,
        primary.id,
        secondary.id,
        {
            "moved_event_ids": moved_ids,
            "events_migrated": len(moved_ids),
            "metadata_strategy": options.metadata_strategy,
            "updated_fields": sorted(attrs),
            "primary_before": primary_before,
            "primary_after": venue_snapshot(primary),
            "secondary_before": secondary_before,
        },
        performed_by=options.performed_by,
        notes=options.notes,
    )
    logger.info(
        "Venues merged",
        extra={
            "merge_log_id": log.id,
            "primary_venue_id": primary.id,
            "secondary_venue_id": secondary.id,
            "events_migrated": len(moved_ids),
        },
    )
    return MergeResult(
        log_id=log.id,
        primary_venue_id=primary.id,
        secondary_venue_id=secondary.id,
        events_migrated=len(moved_ids),
        updated_fields=sorted(attrs),
    )


async def _rollback_exists(session: AsyncSession, log: MergeLog) -> bool:
    stmt = select(MergeLog).where(
        MergeLog.action_type == MergeAction.ROLLBACK.value,
        MergeLog.primary_venue_id == log.primary_venue_id,
        MergeLog.secondary_venue_id == log.secondary_venue_id,
    )
    for rollback in (await session.execute(stmt)).scalars():
        if (rollback.metadata_json or {}).get("original_log_id") == log.id:
            return True
    return False


async def rollback_merge(
    session: AsyncSession,
    log_id: int,
    options: RollbackOptions | None = None,
) -> RollbackResult:
    """Undo a merge: events back, primary profile restored, secondary un-deleted.

    The original log row is left untouched; a new ``rollback`` row points at it.
    """
    options = options or RollbackOptions()
    log = await session.get(MergeLog, log_id)
    if log is None:
        raise FatalDataError(f"merge log {log_id} not found", reason="log_not_found")
    if log.action_type != MergeAction.MERGE.value:
        raise FatalDataError(f"log {log_id} is a {log.action_type}, not a merge", reason="not_a_merge")
    if await _rollback_exists(session, log):
        raise FatalDataError(f"merge {log_id} was already rolled back", reason="already_rolled_back")

    primary = await session.get(Venue, log.primary_venue_id)
    secondary = await session.get(Venue, log.secondary_venue_id)
    if primary is None or secondary is None:
        raise FatalDataError("merged venues no longer exist", reason="venue_not_found")
    if secondary.merged_into_id != primary.id or not secondary.is_deleted:
        raise FatalDataError(
            f"venue {secondary.id} is no longer merged into {primary.id}", reason="merge_state_changed"
        )

    metadata = dict(log.metadata_json or {})
    moved_ids = [int(i) for i in metadata.get("moved_event_ids", [])]
    restorable: list[int] = []
    if moved_ids:
        stmt = select(Event).where(Event.id.in_(moved_ids), Event.venue_id == primary.id).order_by(Event.id)
        for event in (await session.execute(stmt)).scalars():
            event.venue_id = secondary.id
            restorable.append(event.id)

    primary_before = metadata.get("primary_before") or {}
    secondary_before = metadata.get("secondary_before") or {}
    if primary_before:
        restored_place_id = primary_before.get("place_id")
        if primary.place_id != restored_place_id:
            primary.place_id = None
            await session.flush()
        for name in PROFILE_FIELDS:
            if name in primary_before:
                setattr(primary, name, primary_before[name])
    if secondary.place_id is None and secondary_before.get("place_id"):
        secondary.place_id = secondary_before["place_id"]

    secondary.deleted_at = None
    secondary.merged_into_id = None
    secondary.deleted_by = None
    await session.flush()

    rollback_log = await _append_log(
        session,
        MergeAction.ROLLBACK,
        primary.id,
        secondary.id,
        {
            "original_log_id": log.id,
            "restored_event_ids": restorable,
            "events_restored": len(restorable),
            "merged_at": as_utc(log.created_at).isoformat() if log.created_at else None,
        },
        performed_by=options.performed_by,
        notes=options.notes,
    )
    logger.info(
        "Merge rolled back",
        extra={"merge_log_id": log.id, "rollback_log_id": rollback_log.id, "events_restored": len(restorable)},
    )
    return RollbackResult(
        log_id=rollback_log.id,
        original_log_id=log.id,
        primary_venue_id=primary.id,
        secondary_venue_id=secondary.id,
        events_restored=len(restorable),
    )


def profile_completeness(venue: Venue) -> int:
    return sum(1 for name in PROFILE_FIELDS if getattr(venue, name) is not None)


async def determine_primary_venue(session: AsyncSession, venue1_id: int, venue2_id: int) -> tuple[int, int]:
    """(primary_id, secondary_id): richer profile, then older, then lower id."""
    first, second = await _load_pair(session, venue1_id, venue2_id)

    def rank(v: Venue) -> tuple[int, Any, int]:
        return (-profile_completeness(v), as_utc(v.created_at), v.id)

    winner, loser = sorted([first, second], key=rank)
    return winner.id, loser.id


async def list_merge_history(
    session: AsyncSession,
    *,
    venue_id: int | None = None,
    action_type: str | None = None,
    limit: int = 100,
) -> list[MergeLog]:
    stmt = select(MergeLog).order_by(MergeLog.created_at.desc(), MergeLog.id.desc()).limit(limit)
    if venue_id is not None:
        stmt = stmt.where(or_(MergeLog.primary_venue_id == venue_id, MergeLog.secondary_venue_id == venue_id))
    if action_type is not None:
        stmt = stmt.where(MergeLog.action_type == action_type)
    return list((await session.execute(stmt)).scalars().all())


async def create_not_duplicate_log(
    session: AsyncSession,
    venue1_id: int,
    venue2_id: int,
    options: MergeOptions | None = None,
) -> MergeLog:
    """Record that an operator reviewed the pair and they are different venues."""
    options = options or MergeOptions()
    if venue1_id == venue2_id:
        raise FatalDataError("a venue is trivially itself", reason="self_merge")
    for venue_id in (venue1_id, venue2_id):
        if await session.get(Venue, venue_id) is None:
            raise FatalDataError(f"venue {venue_id} not found", reason="venue_not_found")
    return await _append_log(
        session,
        MergeAction.NOT_DUPLICATE,
        venue1_id,
        venue2_id,
        {"reviewed_at": utcnow().isoformat()},
        performed_by=options.performed_by,
        notes=options.notes,
    )
