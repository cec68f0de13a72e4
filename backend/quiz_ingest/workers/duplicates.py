"""Maintenance worker: batch fuzzy-duplicate scan and merge-log sync."""
from __future__ import annotations

import logging
from typing import Any

from quiz_ingest.celery_app import celery
from quiz_ingest.core.timeutil import utcnow
from quiz_ingest.db import async_session_factory
from quiz_ingest.duplicate_detector import process_all_venues, sync_with_merge_logs
from quiz_ingest.ingestion import record_job_run
from quiz_ingest.models.ops import JobStatus, JobType
from quiz_ingest.schemas.options import BatchOptions, BatchProgress
from quiz_ingest.workers import run_async

logger = logging.getLogger(__name__)


def _log_progress(progress: BatchProgress) -> None:
    logger.info(
        "Duplicate scan progress",
        extra={"batch": progress.batch, "total_batches": progress.total_batches, "stored": progress.duplicates_stored},
    )


async def scan_duplicates(options: BatchOptions) -> dict[str, Any]:
    started_at = utcnow()
    async with async_session_factory() as session:
        progress = await process_all_venues(session, options)
        synced = await sync_with_merge_logs(session)
    summary = progress.model_dump() | {"synced": synced}
    await record_job_run(
        async_session_factory,
        job_type=JobType.DUPLICATE_SCAN,
        status=JobStatus.SUCCESS,
        source_id=None,
        started_at=started_at,
        metadata=summary,
    )
    return summary


@celery.task(name="quiz_ingest.workers.duplicates.run_duplicate_scan")
def run_duplicate_scan(options: dict[str, Any] | None = None) -> dict[str, Any]:
    batch_options = BatchOptions(**(options or {}), progress_callback=_log_progress)
    return run_async(scan_duplicates(batch_options))
