"""Detail worker: fetch, normalize and persist one listing."""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from quiz_ingest.assets import HttpAssetStore
from quiz_ingest.celery_app import celery
from quiz_ingest.db import async_session_factory
from quiz_ingest.errors import TransientFetchError
from quiz_ingest.geocoder import GoogleGeocoder
from quiz_ingest.ingestion import DetailJob, DetailProcessor
from quiz_ingest.venue_resolver import VenueResolver
from quiz_ingest.workers import retry_budget, retry_countdown, run_async

logger = logging.getLogger(__name__)


def build_processor() -> DetailProcessor:
    return DetailProcessor(
        async_session_factory,
        resolver=VenueResolver(GoogleGeocoder()),
        asset_store=HttpAssetStore(),
    )


@celery.task(bind=True, name="quiz_ingest.workers.detail.run_detail", max_retries=retry_budget())
def run_detail(self, job: dict[str, Any]) -> dict[str, Any]:
    detail_job = DetailJob.model_validate(job)
    try:
        outcome = run_async(build_processor().process(detail_job))
    except TransientFetchError as exc:
        if self.request.retries >= self.max_retries:
            logger.error(
                "Detail job gave up after retries",
                extra={"source": detail_job.source_name, "ref": detail_job.listing.ref, "reason": exc.reason},
            )
        raise self.retry(exc=exc, countdown=retry_countdown(self.request.retries))
    return asdict(outcome) | {"status": outcome.status.value}
