"""Fuzzy duplicate detection over canonical venues.

Scores combine name similarity (generic words such as "The", "Pub" removed)
with location similarity (postcode, address text, distance). Batch scans
store candidate pairs in ``venue_fuzzy_duplicates`` for operator review.
"""
from __future__ import annotations

import logging
import math
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from quiz_ingest.core.geo import bounding_box, haversine_m, proximity_score
from quiz_ingest.core.text import (
    name_similarity,
    normalize_name,
    normalize_postcode,
    string_similarity,
)
from quiz_ingest.db import insert_or_conflict
from quiz_ingest.errors import ConflictError
from quiz_ingest.metrics import DUPLICATE_CANDIDATES_STORED_TOTAL
from quiz_ingest.models.location import Venue
from quiz_ingest.models.merge import DuplicateStatus, MergeAction, MergeLog, VenueFuzzyDuplicate
from quiz_ingest.schemas.options import BatchOptions, BatchProgress, DetectorOptions

logger = logging.getLogger(__name__)

NAME_WEIGHT = 0.7
LOCATION_WEIGHT = 0.3
CANDIDATE_RADIUS_M = 1000.0


def calculate_name_similarity(a: Venue, b: Venue) -> float:
    return name_similarity(a.name, b.name)


def calculate_geo_similarity(a: Venue, b: Venue) -> float:
    if a.coordinates is None or b.coordinates is None:
        return 0.0
    return proximity_score(haversine_m(*a.coordinates, *b.coordinates))


def calculate_location_similarity(a: Venue, b: Venue) -> float:
    if a.postcode and b.postcode and normalize_postcode(a.postcode) == normalize_postcode(b.postcode):
        return 1.0
    return max(string_similarity(a.address, b.address), calculate_geo_similarity(a, b))


def calculate_similarity_score(a: Venue, b: Venue) -> float:
    if a.place_id and b.place_id and a.place_id == b.place_id:
        return 1.0
    score = NAME_WEIGHT * calculate_name_similarity(a, b) + LOCATION_WEIGHT * calculate_location_similarity(a, b)
    return max(0.0, min(1.0, score))


def match_criteria(a: Venue, b: Venue) -> list[str]:
    criteria: list[str] = []
    if calculate_name_similarity(a, b) >= 0.85:
        criteria.append("similar_name")
    if a.postcode and b.postcode and normalize_postcode(a.postcode) == normalize_postcode(b.postcode):
        criteria.append("same_postcode")
    if a.city_id == b.city_id:
        criteria.append("same_city")
    if calculate_geo_similarity(a, b) >= 0.8:
        criteria.append("geographic_proximity")
    if a.place_id and b.place_id and a.place_id == b.place_id:
        criteria.append("same_place_id")
    return criteria


def _ordered(id1: int, id2: int) -> tuple[int, int]:
    return (id1, id2) if id1 < id2 else (id2, id1)


async def not_duplicate_pairs(session: AsyncSession, venue_id: int | None = None) -> set[tuple[int, int]]:
    stmt = select(MergeLog.primary_venue_id, MergeLog.secondary_venue_id).where(
        MergeLog.action_type == MergeAction.NOT_DUPLICATE.value
    )
    if venue_id is not None:
        stmt = stmt.where(or_(MergeLog.primary_venue_id == venue_id, MergeLog.secondary_venue_id == venue_id))
    return {_ordered(a, b) for a, b in (await session.execute(stmt)).all()}


async def _candidates(session: AsyncSession, venue: Venue) -> list[Venue]:
    """Active venues in the same city, plus anything within 1 km when coordinates exist."""
    scope = Venue.city_id == venue.city_id
    if venue.coordinates is not None:
        min_lat, max_lat, min_lng, max_lng = bounding_box(*venue.coordinates, CANDIDATE_RADIUS_M)
        scope = or_(
            scope,
            and_(Venue.latitude.between(min_lat, max_lat), Venue.longitude.between(min_lng, max_lng)),
        )
    stmt = (
        select(Venue)
        .where(Venue.deleted_at.is_(None), Venue.id != venue.id, scope)
        .order_by(Venue.id)
    )
    return list((await session.execute(stmt)).scalars().all())


async def find_potential_duplicates(
    session: AsyncSession,
    venue: Venue,
    options: DetectorOptions | None = None,
) -> list[tuple[float, Venue]]:
    """Ranked ``(score, candidate)`` pairs, best first; reviewed non-duplicates excluded."""
    options = options or DetectorOptions()
    excluded = await not_duplicate_pairs(session, venue.id)
    ranked: list[tuple[float, Venue]] = []
    for candidate in await _candidates(session, venue):
        if _ordered(venue.id, candidate.id) in excluded:
            continue
        score = calculate_similarity_score(venue, candidate)
        same_place = bool(venue.place_id and venue.place_id == candidate.place_id)
        name_sim = calculate_name_similarity(venue, candidate)
        loc_sim = calculate_location_similarity(venue, candidate)
        if (
            same_place
            or (name_sim >= options.name_threshold and loc_sim >= options.location_threshold)
            or score >= options.name_threshold
        ):
            ranked.append((score, candidate))
    ranked.sort(key=lambda item: (-item[0], item[1].id))
    if options.limit is not None:
        ranked = ranked[: options.limit]
    return ranked


async def store_candidate(session: AsyncSession, a: Venue, b: Venue, score: float) -> bool:
    """Insert the pair unless already stored. Returns True when a row was written."""
    first, second = (a, b) if a.id < b.id else (b, a)
    exists = (
        await session.execute(
            select(VenueFuzzyDuplicate.id).where(
                VenueFuzzyDuplicate.venue1_id == first.id, VenueFuzzyDuplicate.venue2_id == second.id
            )
        )
    ).scalar_one_or_none()
    if exists is not None:
        return False
    row = VenueFuzzyDuplicate(
        venue1_id=first.id,
        venue2_id=second.id,
        confidence_score=round(score, 4),
        name_similarity=round(calculate_name_similarity(first, second), 4),
        location_similarity=round(calculate_location_similarity(first, second), 4),
        match_criteria=match_criteria(first, second),
    )
    try:
        await insert_or_conflict(session, row)
    except ConflictError:
        return False
    return True


async def process_all_venues(session: AsyncSession, options: BatchOptions | None = None) -> BatchProgress:
    """Scan every active venue in pages of ``batch_size``; commits after each page."""
    options = options or BatchOptions()
    if options.clear_existing:
        await session.execute(delete(VenueFuzzyDuplicate))
        await session.commit()
        logger.info("Cleared stored duplicate candidates")

    total = (
        await session.execute(select(func.count(Venue.id)).where(Venue.deleted_at.is_(None)))
    ).scalar_one()
    total_batches = math.ceil(total / options.batch_size) if total else 0
    progress = BatchProgress(
        batch=0,
        total_batches=total_batches,
        venues_processed=0,
        total_venues=total,
        duplicates_found=0,
        duplicates_stored=0,
    )
    seen_pairs: set[tuple[int, int]] = set()
    last_id = 0

    for batch in range(1, total_batches + 1):
        page = (
            await session.execute(
                select(Venue)
                .where(Venue.deleted_at.is_(None), Venue.id > last_id)
                .order_by(Venue.id)
                .limit(options.batch_size)
            )
        ).scalars().all()
        if not page:
            break
        for venue in page:
            for score, candidate in await find_potential_duplicates(session, venue, options):
                pair = _ordered(venue.id, candidate.id)
                if pair in seen_pairs:
                    continue
                seen_pairs.add(pair)
                progress.duplicates_found += 1
                if score < options.min_confidence:
                    continue
                if await store_candidate(session, venue, candidate, score):
                    progress.duplicates_stored += 1
                    DUPLICATE_CANDIDATES_STORED_TOTAL.inc()
        last_id = page[-1].id
        progress.batch = batch
        progress.venues_processed += len(page)
        await session.commit()

        logger.info("Duplicate scan batch done", extra=progress.model_dump())
        if options.progress_callback is not None:
            options.progress_callback(progress.model_copy())
    return progress


async def get_statistics(session: AsyncSession) -> dict[str, Any]:
    fd = VenueFuzzyDuplicate

    def _count(cond) -> Any:
        return func.coalesce(func.sum(case((cond, 1), else_=0)), 0)

    stmt = select(
        func.count(fd.id).label("total"),
        _count(fd.confidence_score >= 0.90).label("high_confidence"),
        _count(and_(fd.confidence_score >= 0.75, fd.confidence_score < 0.90)).label("medium_confidence"),
        _count(fd.confidence_score < 0.75).label("low_confidence"),
        _count(fd.status == DuplicateStatus.PENDING.value).label("pending"),
        _count(fd.status == DuplicateStatus.REVIEWED.value).label("reviewed"),
        _count(fd.status == DuplicateStatus.MERGED.value).label("merged"),
        _count(fd.status == DuplicateStatus.REJECTED.value).label("rejected"),
        func.avg(fd.confidence_score).label("avg_confidence"),
        func.avg(fd.name_similarity).label("avg_name_similarity"),
        func.avg(fd.location_similarity).label("avg_location_similarity"),
    )
    row = (await session.execute(stmt)).one()
    return {key: (float(value) if key.startswith("avg_") and value is not None else value) for key, value in row._mapping.items()}


async def sync_with_merge_logs(session: AsyncSession) -> dict[str, int]:
    """Mark pending candidates merged/rejected from merge and not-duplicate log entries."""
    logs = (
        await session.execute(
            select(MergeLog)
            .where(
                MergeLog.action_type.in_(
                    [MergeAction.MERGE.value, MergeAction.NOT_DUPLICATE.value, MergeAction.ROLLBACK.value]
                )
            )
            .order_by(MergeLog.id)
        )
    ).scalars().all()
    rolled_back = {
        int(log.metadata_json.get("original_log_id"))
        for log in logs
        if log.action_type == MergeAction.ROLLBACK.value and (log.metadata_json or {}).get("original_log_id")
    }
    decisions: dict[tuple[int, int], MergeLog] = {}
    for log in logs:
        if log.action_type == MergeAction.ROLLBACK.value or log.id in rolled_back:
            continue
        decisions[_ordered(log.primary_venue_id, log.secondary_venue_id)] = log

    pending = (
        await session.execute(select(VenueFuzzyDuplicate).where(VenueFuzzyDuplicate.status == DuplicateStatus.PENDING.value))
    ).scalars().all()
    counts = {"merged": 0, "rejected": 0}
    for candidate in pending:
        log = decisions.get((candidate.venue1_id, candidate.venue2_id))
        if log is None:
            continue
        if log.action_type == MergeAction.MERGE.value:
            candidate.status = DuplicateStatus.MERGED.value
            counts["merged"] += 1
        else:
            candidate.status = DuplicateStatus.REJECTED.value
            counts["rejected"] += 1
        candidate.reviewed_at = log.created_at
        candidate.reviewed_by = log.performed_by
    await session.commit()
    logger.info("Synced duplicate candidates with merge logs", extra=counts)
    return counts


def describe_pair(a: Venue, b: Venue) -> dict[str, Any]:
    return {
        "venue1_id": a.id,
        "venue2_id": b.id,
        "same_normalized_name": normalize_name(a.name) == normalize_name(b.name),
        "name_similarity": round(calculate_name_similarity(a, b), 4),
        "location_similarity": round(calculate_location_similarity(a, b), 4),
        "score": round(calculate_similarity_score(a, b), 4),
        "criteria": match_criteria(a, b),
    }
