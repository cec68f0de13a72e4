"""Per-source orchestration: index runs and detail units.

``IndexCoordinator`` pulls a source's listings, drops the ones seen inside the
freshness window and hands the rest to the ``RateLimiter``, which enqueues one
detail job per listing. ``DetailProcessor`` runs one detail job: fetch,
normalize, then venue resolution + event upsert in a single transaction.

Both are generic; everything source-specific sits behind ``Extractor``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quiz_ingest.assets import AssetStore
from quiz_ingest.core.text import normalize_address, normalize_name
from quiz_ingest.core.timeutil import utcnow
from quiz_ingest.errors import (
    FatalDataError,
    IngestError,
    PartialEnrichmentError,
    TransientFetchError,
)
from quiz_ingest.event_upserter import find_or_create_performer, upsert_event
from quiz_ingest.extractors import Extractor, get_extractor
from quiz_ingest.metrics import (
    DETAIL_JOBS_ENQUEUED_TOTAL,
    DETAIL_JOBS_TOTAL,
    DETAIL_LATENCY_SECONDS,
    LISTINGS_SEEN_TOTAL,
    LISTINGS_SKIPPED_TOTAL,
)
from quiz_ingest.models.event import Event, EventSource
from quiz_ingest.models.location import Venue
from quiz_ingest.models.ops import JobRun, JobStatus, JobType
from quiz_ingest.models.source import Source
from quiz_ingest.rate_limiter import RateLimiter
from quiz_ingest.schemas.listing import NormalizedListing, PerformerInput, RawListing
from quiz_ingest.schemas.options import IngestOptions, ResolveOptions
from quiz_ingest.venue_resolver import VenueResolver

logger = logging.getLogger(__name__)

IMAGE_REF_MAX_LEN = 1024


class DetailJob(BaseModel):
    """JSON payload of one detail job. Every per-run flag travels here."""

    source_name: str
    listing: RawListing
    force: bool = False
    index_run_id: int | None = None


# (job, delay_seconds) -> None
EnqueueDetailFn = Callable[[DetailJob, int], Any]


async def load_source(session: AsyncSession, source_name: str) -> Source:
    source = (await session.execute(select(Source).where(Source.name == source_name))).scalar_one_or_none()
    if source is None:
        raise FatalDataError(f"unknown source {source_name!r}", reason="unknown_source")
    return source


def listing_key(name: str | None, address: str | None) -> str:
    return f"{normalize_name(name)}|{normalize_address(address)}"


async def recently_seen(session: AsyncSession, source_id: int, since: datetime) -> tuple[set[str], set[str]]:
    """(venue keys, listing refs) this source confirmed at or after ``since``."""
    stmt = (
        select(Venue.name, Venue.address, EventSource.metadata_json)
        .join(Event, Event.id == EventSource.event_id)
        .join(Venue, Venue.id == Event.venue_id)
        .where(EventSource.source_id == source_id, EventSource.last_seen_at >= since)
    )
    keys: set[str] = set()
    refs: set[str] = set()
    for venue_name, address, metadata in (await session.execute(stmt)).all():
        keys.add(listing_key(venue_name, address))
        ref = (metadata or {}).get("ref")
        if ref:
            refs.add(str(ref))
    return keys, refs


async def record_job_run(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    job_type: JobType,
    status: JobStatus,
    source_id: int | None,
    started_at: datetime,
    metadata: dict[str, Any] | None = None,
    error: str | None = None,
) -> int:
    async with session_factory() as session:
        async with session.begin():
            run = JobRun(
                job_type=job_type.value,
                source_id=source_id,
                status=status.value,
                metadata_json=metadata,
                error=error,
                started_at=started_at,
                finished_at=utcnow(),
            )
            session.add(run)
            await session.flush()
            return run.id


# ── Index ──


@dataclass(slots=True)
class IndexRunReport:
    source: str
    total: int = 0
    limited_to: int | None = None
    skipped: int = 0
    enqueued: int = 0
    failed: int = 0
    force: bool = False
    delays: list[int] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    job_run_id: int | None = None

    def as_metadata(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("delays")
        data.pop("job_run_id")
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["last_delay_s"] = self.delays[-1] if self.delays else 0
        return data


class IndexCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        enqueue_detail: EnqueueDetailFn | Callable[[DetailJob, int], Awaitable[Any]],
        *,
        rate_limiter: RateLimiter | None = None,
    ):
        self.session_factory = session_factory
        self.enqueue_detail = enqueue_detail
        self.rate_limiter = rate_limiter or RateLimiter()

    async def select_pending(
        self,
        source: Source,
        listings: list[RawListing],
        options: IngestOptions,
        *,
        now: datetime,
    ) -> list[RawListing]:
        if options.force or options.skip_if_updated_within_days <= 0:
            return listings
        since = now - timedelta(days=options.skip_if_updated_within_days)
        async with self.session_factory() as session:
            keys, refs = await recently_seen(session, source.id, since)
        return [
            listing
            for listing in listings
            if listing.ref not in refs and listing_key(listing.name, listing.address) not in keys
        ]

    async def run(
        self,
        source_name: str,
        options: IngestOptions | None = None,
        *,
        extractor: Extractor | None = None,
        now: datetime | None = None,
    ) -> IndexRunReport:
        options = options or IngestOptions()
        now = now or utcnow()
        report = IndexRunReport(source=source_name, force=options.force, started_at=now)

        async with self.session_factory() as session:
            source = await load_source(session, source_name)
        if not source.enabled:
            report.error = "source_disabled"
            logger.warning("Index run skipped: source disabled", extra={"source": source_name})
            return await self._finish(report, source.id, JobStatus.SKIPPED)

        extractor = extractor or get_extractor(source)
        try:
            listings = await extractor.fetch_index()
        except TransientFetchError:
            raise
        except IngestError as exc:
            report.error = exc.reason
            logger.error("Index fetch failed", extra={"source": source_name, "reason": exc.reason})
            return await self._finish(report, source.id, JobStatus.ERROR)

        report.total = len(listings)
        LISTINGS_SEEN_TOTAL.labels(source=source_name).inc(len(listings))
        if options.limit is not None and len(listings) > options.limit:
            listings = listings[: options.limit]
            report.limited_to = options.limit

        pending = await self.select_pending(source, listings, options, now=now)
        report.skipped = len(listings) - len(pending)
        if report.skipped:
            LISTINGS_SKIPPED_TOTAL.labels(source=source_name).inc(report.skipped)

        def enqueue(listing: RawListing, index: int, delay: int):
            job = DetailJob(source_name=source_name, listing=listing, force=options.force)
            return self.enqueue_detail(job, delay)

        if self.rate_limiter.max_per_hour != options.max_jobs_per_hour:
            limiter = RateLimiter(
                options.max_jobs_per_hour,
                interval_s=self.rate_limiter.interval_s,
                cursor_store=self.rate_limiter.cursor_store,
            )
        else:
            limiter = self.rate_limiter
        scheduled = await limiter.schedule(
            pending, enqueue, force=options.force, cursor_key=f"detail:{source_name}"
        )
        report.enqueued = scheduled.scheduled
        report.failed = scheduled.failed
        report.delays = scheduled.delays
        DETAIL_JOBS_ENQUEUED_TOTAL.labels(source=source_name).inc(scheduled.scheduled)
        return await self._finish(report, source.id, JobStatus.SUCCESS)

    async def _finish(self, report: IndexRunReport, source_id: int, status: JobStatus) -> IndexRunReport:
        report.finished_at = utcnow()
        report.job_run_id = await record_job_run(
            self.session_factory,
            job_type=JobType.INDEX,
            status=status,
            source_id=source_id,
            started_at=report.started_at,
            metadata=report.as_metadata(),
            error=report.error,
        )
        logger.info("Index run finished", extra={"job_run_id": report.job_run_id, **report.as_metadata()})
        return report


# ── Detail ──


@dataclass(slots=True)
class DetailOutcome:
    status: JobStatus
    source: str
    ref: str
    venue_id: int | None = None
    venue_status: str | None = None
    event_id: int | None = None
    event_action: str | None = None
    enrichment_stripped: bool = False
    stripped_field: str | None = None
    reason: str | None = None


class DetailProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        resolver: VenueResolver | None = None,
        asset_store: AssetStore | None = None,
        resolve_options: ResolveOptions | None = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver or VenueResolver()
        self.asset_store = asset_store
        self.resolve_options = resolve_options or ResolveOptions()

    async def process(
        self,
        job: DetailJob,
        *,
        extractor: Extractor | None = None,
        now: datetime | None = None,
    ) -> DetailOutcome:
        started = time.perf_counter()
        started_at = utcnow()
        listing = job.listing
        outcome = DetailOutcome(status=JobStatus.SUCCESS, source=job.source_name, ref=listing.ref)
        source_id: int | None = None
        try:
            async with self.session_factory() as session:
                source = await load_source(session, job.source_name)
            source_id = source.id
            extractor = extractor or get_extractor(source)
            detail = await extractor.fetch_detail(listing.ref)
            normalized = extractor.normalize(listing, detail)
            normalized = await self._download_assets(normalized, force=job.force)
            await self._persist_with_fallback(source, normalized, outcome, now=now or utcnow())
        except TransientFetchError as exc:
            DETAIL_JOBS_TOTAL.labels(source=job.source_name, outcome="retry", error_class=type(exc).__name__).inc()
            logger.warning(
                "Detail fetch failed, will retry",
                extra={"source": job.source_name, "ref": listing.ref, "reason": exc.reason},
            )
            raise
        except IngestError as exc:
            outcome.status = JobStatus.ERROR
            outcome.reason = exc.reason
            DETAIL_JOBS_TOTAL.labels(source=job.source_name, outcome="error", error_class=type(exc).__name__).inc()
            logger.error(
                "Detail job failed",
                extra={
                    "source": job.source_name,
                    "ref": listing.ref,
                    "listing_name": listing.name,
                    "reason": exc.reason,
                    "error": str(exc),
                    "context": exc.context,
                },
            )
            await record_job_run(
                self.session_factory,
                job_type=JobType.DETAIL,
                status=JobStatus.ERROR,
                source_id=source_id,
                started_at=started_at,
                metadata={"ref": listing.ref, "listing": listing.model_dump(mode="json"), "context": exc.context},
                error=f"{exc.reason}: {exc}",
            )
            return outcome
        finally:
            DETAIL_LATENCY_SECONDS.labels(source=job.source_name).observe(time.perf_counter() - started)

        DETAIL_JOBS_TOTAL.labels(source=job.source_name, outcome="success", error_class="").inc()
        logger.info("Detail job finished", extra=asdict(outcome) | {"status": outcome.status.value})
        return outcome

    async def _download_assets(self, normalized: NormalizedListing, *, force: bool) -> NormalizedListing:
        """Best-effort: an asset that cannot be fetched is simply left out."""
        if self.asset_store is None:
            return normalized
        hero_ref: str | None = None
        if normalized.image_url:
            try:
                hero_ref = await self.asset_store.download(normalized.image_url, force=force)
            except PartialEnrichmentError as exc:
                logger.warning("Image dropped", extra={"url": normalized.image_url, "error": str(exc)})
        performer = normalized.performer
        if performer and performer.profile_image_url:
            try:
                ref = await self.asset_store.download(performer.profile_image_url, force=force)
            except PartialEnrichmentError as exc:
                logger.warning("Performer image dropped", extra={"url": performer.profile_image_url, "error": str(exc)})
                ref = None
            performer = PerformerInput(name=performer.name, profile_image_url=ref)
        event = normalized.event.model_copy(update={"hero_image_url": hero_ref})
        return normalized.model_copy(update={"event": event, "performer": performer})

    async def _persist_with_fallback(
        self, source: Source, normalized: NormalizedListing, outcome: DetailOutcome, *, now: datetime
    ) -> None:
        """Persist once; on an enrichment failure persist once more without it.

        A ``PartialEnrichmentError`` names the failing field and only that
        field is dropped. A database error with enrichment attached has no
        known culprit, so every enrichment is dropped.
        """
        has_enrichment = bool(normalized.event.hero_image_url or normalized.performer)
        try:
            await self._persist(source, normalized, outcome, now=now)
            return
        except PartialEnrichmentError as exc:
            stripped = exc.field
            logger.warning(
                "Enrichment failed, retrying without it",
                extra={"source": source.name, "field": exc.field, "error": str(exc)},
            )
        except SQLAlchemyError as exc:
            if not has_enrichment:
                raise FatalDataError(str(exc), reason="persist_failed") from exc
            stripped = None
            logger.warning(
                "Upsert failed with enrichment attached, retrying without it",
                extra={"source": source.name, "error": str(exc)},
            )
        outcome.enrichment_stripped = True
        outcome.stripped_field = stripped or "all"
        try:
            await self._persist(source, normalized.without_enrichment(stripped), outcome, now=now)
        except SQLAlchemyError as exc:
            raise FatalDataError(str(exc), reason="persist_failed") from exc

    async def _persist(
        self, source: Source, normalized: NormalizedListing, outcome: DetailOutcome, *, now: datetime
    ) -> None:
        """Venue, performer, event and provenance commit or roll back together."""
        hero = normalized.event.hero_image_url
        if hero and len(hero) > IMAGE_REF_MAX_LEN:
            raise PartialEnrichmentError("image reference too long", field="image")

        async with self.session_factory() as session:
            async with session.begin():
                resolved = await self.resolver.resolve(session, normalized.venue, self.resolve_options)
                if not resolved.ok:
                    raise FatalDataError(
                        f"venue could not be resolved: {resolved.reason}",
                        reason=resolved.reason or "venue_unresolved",
                        context={"venue": normalized.venue.model_dump(mode="json")},
                    )
                event_input = normalized.event
                if normalized.performer is not None:
                    performer_id = await self._attach_performer(session, normalized.performer, source.id)
                    event_input = event_input.model_copy(update={"performer_id": performer_id})
                upserted = await upsert_event(
                    session,
                    resolved.venue,
                    event_input,
                    source.id,
                    source_url=normalized.source_url,
                    metadata=normalized.metadata,
                    now=now,
                )
                outcome.venue_id = resolved.venue.id
                outcome.venue_status = resolved.status.value
                outcome.event_id = upserted.event.id
                outcome.event_action = upserted.action.value

    async def _attach_performer(self, session: AsyncSession, performer: PerformerInput, source_id: int) -> int:
        try:
            async with session.begin_nested():
                row = await find_or_create_performer(
                    session, performer.name, source_id, performer.profile_image_url
                )
        except SQLAlchemyError as exc:
            raise PartialEnrichmentError(str(exc), field="performer") from exc
        return row.id
