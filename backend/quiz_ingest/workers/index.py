"""Index worker: one run per source, fanning detail jobs out through the rate limiter."""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from sqlalchemy import select

from quiz_ingest.celery_app import celery
from quiz_ingest.config import settings
from quiz_ingest.db import async_session_factory
from quiz_ingest.errors import TransientFetchError
from quiz_ingest.ingestion import DetailJob, IndexCoordinator
from quiz_ingest.models.source import Source
from quiz_ingest.rate_limiter import RateLimiter, ScheduleCursorStore
from quiz_ingest.schemas.options import IngestOptions
from quiz_ingest.workers import retry_budget, retry_countdown, run_async

logger = logging.getLogger(__name__)

DETAIL_TASK = "quiz_ingest.workers.detail.run_detail"
INDEX_TASK = "quiz_ingest.workers.index.run_index"


def enqueue_detail(job: DetailJob, delay: int) -> None:
    celery.send_task(
        DETAIL_TASK,
        kwargs={"job": job.model_dump(mode="json")},
        queue="ingest_detail",
        routing_key="ingest_detail",
        countdown=delay,
        priority=settings.JOB_PRIORITY,
    )


def build_coordinator() -> IndexCoordinator:
    cursor_store = ScheduleCursorStore(async_session_factory) if settings.RATE_LIMIT_PERSISTENT else None
    return IndexCoordinator(
        async_session_factory,
        enqueue_detail,
        rate_limiter=RateLimiter(cursor_store=cursor_store),
    )


@celery.task(bind=True, name=INDEX_TASK, max_retries=retry_budget())
def run_index(self, source_name: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
    """Fetch a source's index and enqueue detail jobs for stale listings."""
    ingest_options = IngestOptions(**(options or {}))
    try:
        report = run_async(build_coordinator().run(source_name, ingest_options))
    except TransientFetchError as exc:
        logger.warning(
            "Index fetch unavailable, retrying",
            extra={"source": source_name, "reason": exc.reason, "attempt": self.request.retries + 1},
        )
        raise self.retry(exc=exc, countdown=retry_countdown(self.request.retries))
    data = asdict(report)
    data["started_at"] = report.started_at.isoformat()
    data["finished_at"] = report.finished_at.isoformat() if report.finished_at else None
    return data


async def _enabled_sources() -> list[str]:
    async with async_session_factory() as session:
        result = await session.execute(select(Source.name).where(Source.enabled.is_(True)).order_by(Source.name))
        return list(result.scalars().all())


@celery.task(name="quiz_ingest.workers.index.run_all_sources")
def run_all_sources() -> list[str]:
    """Beat task: one index run per enabled source."""
    names = run_async(_enabled_sources())
    for name in names:
        logger.info("Scheduling index run", extra={"source": name})
        celery.send_task(INDEX_TASK, args=[name], queue="ingest_index", routing_key="ingest_index")
    return names
