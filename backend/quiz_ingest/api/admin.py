"""Admin API: duplicate review, venue merge / preview / rollback, manual ingest."""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quiz_ingest.celery_app import celery
from quiz_ingest.core.timeutil import as_utc
from quiz_ingest.db import get_session
from quiz_ingest.duplicate_detector import describe_pair, find_potential_duplicates, get_statistics
from quiz_ingest.errors import FatalDataError
from quiz_ingest.ingestion import load_source
from quiz_ingest.merge_service import (
    MergePreview,
    create_not_duplicate_log,
    determine_primary_venue,
    list_merge_history,
    merge_venues,
    preview_merge,
    rollback_merge,
)
from quiz_ingest.models.location import Venue
from quiz_ingest.models.merge import MergeLog, VenueFuzzyDuplicate
from quiz_ingest.schemas.options import DetectorOptions, IngestOptions, MergeOptions, MetadataStrategy, RollbackOptions

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)

NOT_FOUND_REASONS = {"venue_not_found", "log_not_found", "unknown_source"}


class MergeRequest(BaseModel):
    primary_venue_id: int | None = None
    secondary_venue_id: int
    venue_id: int | None = Field(default=None, description="Pick primary automatically from this pair")
    performed_by: str | None = None
    notes: str | None = None
    metadata_strategy: MetadataStrategy = "prefer_primary"
    dry_run: bool = False


class RollbackRequest(BaseModel):
    performed_by: str | None = None
    notes: str | None = None


class NotDuplicateRequest(BaseModel):
    venue1_id: int
    venue2_id: int
    performed_by: str | None = None
    notes: str | None = None


class IngestRequest(BaseModel):
    force: bool = False
    limit: int | None = Field(default=None, ge=1)


def _http_error(exc: FatalDataError) -> HTTPException:
    status = 404 if exc.reason in NOT_FOUND_REASONS else 400
    return HTTPException(status_code=status, detail={"reason": exc.reason, "message": str(exc)})


def _venue_summary(venue: Venue) -> dict[str, Any]:
    return {
        "id": venue.id,
        "name": venue.name,
        "address": venue.address,
        "postcode": venue.postcode,
        "city_id": venue.city_id,
        "place_id": venue.place_id,
    }


def _log_payload(log: MergeLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "action_type": log.action_type,
        "primary_venue_id": log.primary_venue_id,
        "secondary_venue_id": log.secondary_venue_id,
        "metadata": log.metadata_json,
        "performed_by": log.performed_by,
        "notes": log.notes,
        "created_at": as_utc(log.created_at),
    }


async def _pair(db: AsyncSession, req: MergeRequest) -> tuple[int, int]:
    if req.primary_venue_id is not None:
        return req.primary_venue_id, req.secondary_venue_id
    if req.venue_id is None:
        raise HTTPException(status_code=400, detail="primary_venue_id or venue_id is required")
    return await determine_primary_venue(db, req.venue_id, req.secondary_venue_id)


@router.get("/venues/{venue_id}/duplicates")
async def venue_duplicates(
    venue_id: int,
    limit: int = 10,
    db: AsyncSession = Depends(get_session),
) -> list[dict[str, Any]]:
    venue = await db.get(Venue, venue_id)
    if venue is None or venue.is_deleted:
        raise HTTPException(status_code=404, detail="venue not found")
    ranked = await find_potential_duplicates(db, venue, DetectorOptions(limit=limit))
    return [describe_pair(venue, candidate) | {"candidate": _venue_summary(candidate)} for _, candidate in ranked]


@router.get("/duplicates")
async def stored_duplicates(
    status: str | None = "pending",
    min_confidence: float = 0.0,
    limit: int = 100,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    stmt = (
        select(VenueFuzzyDuplicate)
        .where(VenueFuzzyDuplicate.confidence_score >= min_confidence)
        .order_by(VenueFuzzyDuplicate.confidence_score.desc(), VenueFuzzyDuplicate.id)
        .limit(limit)
    )
    if status:
        stmt = stmt.where(VenueFuzzyDuplicate.status == status)
    rows = (await db.execute(stmt)).scalars().all()
    return {
        "statistics": await get_statistics(db),
        "items": [
            {
                "id": row.id,
                "venue1_id": row.venue1_id,
                "venue2_id": row.venue2_id,
                "confidence_score": row.confidence_score,
                "name_similarity": row.name_similarity,
                "location_similarity": row.location_similarity,
                "match_criteria": row.match_criteria,
                "status": row.status,
            }
            for row in rows
        ],
    }


@router.post("/merges/preview")
async def merge_preview(req: MergeRequest, db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    try:
        primary_id, secondary_id = await _pair(db, req)
        preview = await preview_merge(
            db,
            primary_id,
            secondary_id,
            MergeOptions(performed_by=req.performed_by, notes=req.notes, metadata_strategy=req.metadata_strategy, log_preview=True),
        )
    except FatalDataError as exc:
        raise _http_error(exc) from exc
    await db.commit()
    return asdict(preview)


@router.post("/merges")
async def merge(req: MergeRequest, db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    try:
        primary_id, secondary_id = await _pair(db, req)
        result = await merge_venues(
            db,
            primary_id,
            secondary_id,
            MergeOptions(
                performed_by=req.performed_by,
                notes=req.notes,
                metadata_strategy=req.metadata_strategy,
                dry_run=req.dry_run,
            ),
        )
    except FatalDataError as exc:
        await db.rollback()
        raise _http_error(exc) from exc
    await db.commit()
    return {"dry_run": isinstance(result, MergePreview), **asdict(result)}


@router.post("/merges/{log_id}/rollback")
async def rollback(log_id: int, req: RollbackRequest, db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    try:
        result = await rollback_merge(db, log_id, RollbackOptions(performed_by=req.performed_by, notes=req.notes))
    except FatalDataError as exc:
        await db.rollback()
        raise _http_error(exc) from exc
    await db.commit()
    return asdict(result)


@router.get("/merges")
async def merge_history(
    venue_id: int | None = None,
    action_type: str | None = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_session),
) -> list[dict[str, Any]]:
    logs = await list_merge_history(db, venue_id=venue_id, action_type=action_type, limit=limit)
    return [_log_payload(log) for log in logs]


@router.post("/merges/not-duplicate")
async def not_duplicate(req: NotDuplicateRequest, db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    try:
        log = await create_not_duplicate_log(
            db, req.venue1_id, req.venue2_id, MergeOptions(performed_by=req.performed_by, notes=req.notes)
        )
    except FatalDataError as exc:
        raise _http_error(exc) from exc
    await db.commit()
    return _log_payload(log)


@router.post("/sources/{source_name}/ingest", status_code=202)
async def trigger_ingest(
    source_name: str,
    req: IngestRequest,
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    try:
        source = await load_source(db, source_name)
    except FatalDataError as exc:
        raise _http_error(exc) from exc
    if not source.enabled:
        raise HTTPException(status_code=409, detail="source disabled")
    options = IngestOptions(force=req.force, limit=req.limit)
    result = celery.send_task(
        "quiz_ingest.workers.index.run_index",
        args=[source_name, options.model_dump(mode="json")],
        queue="ingest_index",
        routing_key="ingest_index",
    )
    logger.info("Index run requested", extra={"source": source_name, "force": req.force, "task_id": result.id})
    return {"status": "queued", "task_id": result.id, "source": source_name}
