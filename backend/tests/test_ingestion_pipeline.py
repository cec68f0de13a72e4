import asyncio
from datetime import datetime, time, timedelta, timezone

import httpx
from sqlalchemy import func, select

from quiz_ingest.core.timeutil import as_utc, utcnow
from quiz_ingest.errors import PartialEnrichmentError, TransientFetchError
from quiz_ingest.extractors import Extractor
from quiz_ingest.extractors.base import JsonFeedExtractor
from quiz_ingest.ingestion import DetailJob, DetailProcessor, IndexCoordinator
from quiz_ingest.models.event import Event, EventSource, Performer
from quiz_ingest.models.location import Venue
from quiz_ingest.models.ops import JobRun, JobStatus
from quiz_ingest.models.source import Source
from quiz_ingest.rate_limiter import RateLimiter
from quiz_ingest.schemas.listing import RawDetail, RawListing
from quiz_ingest.schemas.options import IngestOptions

LONDON = {"city": "London", "country_code": "GB"}


def _listing(ref: str = "railway", **kw) -> RawListing:
    data = {
        "ref": ref,
        "name": "The Railway (Back Room)",
        "address": "12 High St, SW6 4UL",
        "time_text": "Wednesday 20:00",
        "fee_text": "£2.50",
        "source_url": f"https://inquizition.example/quiz/{ref}",
        "extra": LONDON,
    } | kw
    return RawListing(**data)


class FakeExtractor(Extractor):
    source_name = "inquizition"

    def __init__(self, listings=None, details=None, index_error=None):
        self.listings = list(listings or [])
        self.details = dict(details or {})
        self.index_error = index_error
        self.detail_calls: list[str] = []

    async def fetch_index(self):
        if self.index_error is not None:
            raise self.index_error
        return self.listings

    async def fetch_detail(self, ref):
        self.detail_calls.append(ref)
        detail = self.details.get(ref)
        if isinstance(detail, Exception):
            raise detail
        return detail or RawDetail()


class FakeAssetStore:
    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.downloads: list[tuple[str, bool]] = []

    async def download(self, url, *, force=False):
        self.downloads.append((url, force))
        if url in self.failing:
            raise PartialEnrichmentError("boom", field="image")
        return f"ab/{url.rsplit('/', 1)[-1]}"


async def _counts(session_factory) -> dict[str, int]:
    async with session_factory() as session:
        return {
            "venues": (await session.execute(select(func.count(Venue.id)))).scalar_one(),
            "events": (await session.execute(select(func.count(Event.id)))).scalar_one(),
            "event_sources": (await session.execute(select(func.count(EventSource.id)))).scalar_one(),
        }


def test_railway_example_end_to_end_and_idempotent(seeded) -> None:
    session_factory, _ = seeded
    processor = DetailProcessor(session_factory)
    extractor = FakeExtractor()
    job = DetailJob(source_name="inquizition", listing=_listing())
    t1 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    t2 = t1 + timedelta(days=7)

    async def _run():
        first = await processor.process(job, extractor=extractor, now=t1)
        counts_after_first = await _counts(session_factory)
        second = await processor.process(job, extractor=extractor, now=t2)
        async with session_factory() as session:
            venue = (await session.execute(select(Venue))).scalar_one()
            event = (await session.execute(select(Event))).scalar_one()
            provenance = (await session.execute(select(EventSource))).scalar_one()
        return first, second, counts_after_first, await _counts(session_factory), venue, event, provenance

    first, second, counts1, counts2, venue, event, provenance = asyncio.run(_run())

    assert first.status == JobStatus.SUCCESS
    assert first.venue_status == "created"
    assert first.event_action == "created"
    assert second.venue_status == "found"
    assert second.event_action == "unchanged"
    assert counts1 == counts2 == {"venues": 1, "events": 1, "event_sources": 1}

    assert venue.name == "The Railway"
    assert venue.postcode == "SW6 4UL"
    assert event.venue_id == venue.id
    assert event.day_of_week == 3
    assert event.start_time == time(20, 0)
    assert event.entry_fee_cents == 250
    assert event.name == "The Railway"
    assert as_utc(provenance.last_seen_at) == t2
    assert provenance.metadata_json["ref"] == "railway"


def test_invalid_listing_is_isolated_and_recorded(seeded) -> None:
    session_factory, _ = seeded
    processor = DetailProcessor(session_factory)
    extractor = FakeExtractor()

    async def _run():
        bad = await processor.process(
            DetailJob(source_name="inquizition", listing=_listing("bad", time_text="whenever you like")),
            extractor=extractor,
        )
        good = await processor.process(DetailJob(source_name="inquizition", listing=_listing("good")), extractor=extractor)
        async with session_factory() as session:
            runs = (await session.execute(select(JobRun))).scalars().all()
        return bad, good, runs, await _counts(session_factory)

    bad, good, runs, counts = asyncio.run(_run())
    assert bad.status == JobStatus.ERROR
    assert bad.reason == "invalid_day_of_week"
    assert good.status == JobStatus.SUCCESS
    assert counts["events"] == 1
    assert len(runs) == 1
    assert runs[0].status == "error"
    assert runs[0].metadata_json["ref"] == "bad"


def test_unresolvable_venue_leaves_no_partial_rows(seeded) -> None:
    session_factory, _ = seeded
    processor = DetailProcessor(session_factory)
    listing = _listing("nowhere", extra={})

    outcome = asyncio.run(processor.process(DetailJob(source_name="inquizition", listing=listing), extractor=FakeExtractor()))

    assert outcome.status == JobStatus.ERROR
    assert outcome.reason == "missing_city"
    assert asyncio.run(_counts(session_factory)) == {"venues": 0, "events": 0, "event_sources": 0}


def test_transient_detail_failure_propagates_for_retry(seeded) -> None:
    session_factory, _ = seeded
    processor = DetailProcessor(session_factory)
    extractor = FakeExtractor(details={"railway": TransientFetchError("timeout")})

    async def _run():
        try:
            await processor.process(DetailJob(source_name="inquizition", listing=_listing()), extractor=extractor)
        except TransientFetchError:
            return True
        return False

    assert asyncio.run(_run()) is True
    assert asyncio.run(_counts(session_factory))["venues"] == 0


def test_failed_image_is_dropped_and_event_still_stored(seeded) -> None:
    session_factory, _ = seeded
    store = FakeAssetStore(failing={"https://cdn.example/broken.jpg"})
    processor = DetailProcessor(session_factory, asset_store=store)
    extractor = FakeExtractor(
        details={
            "railway": RawDetail(
                image_url="https://cdn.example/broken.jpg",
                performer_name="Quizmaster Jo",
                performer_image_url="https://cdn.example/jo.png",
            )
        }
    )

    async def _run():
        outcome = await processor.process(DetailJob(source_name="inquizition", listing=_listing(), force=True), extractor=extractor)
        async with session_factory() as session:
            event = (await session.execute(select(Event))).scalar_one()
            performer = (await session.execute(select(Performer))).scalar_one()
        return outcome, event, performer

    outcome, event, performer = asyncio.run(_run())
    assert outcome.status == JobStatus.SUCCESS
    assert event.hero_image_url is None
    assert event.performer_id == performer.id
    assert performer.profile_image == "ab/jo.png"
    assert all(force for _, force in store.downloads)


class LongRefAssetStore(FakeAssetStore):
    async def download(self, url, *, force=False):
        self.downloads.append((url, force))
        return "ab/" + "x" * 2000 + ".jpg"


def test_oversized_image_ref_is_stripped_but_performer_kept(seeded) -> None:
    session_factory, _ = seeded
    processor = DetailProcessor(session_factory, asset_store=LongRefAssetStore())
    extractor = FakeExtractor(
        details={"railway": RawDetail(image_url="https://cdn.example/hero.jpg", performer_name="Jo")}
    )

    async def _run():
        outcome = await processor.process(DetailJob(source_name="inquizition", listing=_listing()), extractor=extractor)
        async with session_factory() as session:
            event = (await session.execute(select(Event))).scalar_one()
            performer = (await session.execute(select(Performer))).scalar_one()
        return outcome, event, performer

    outcome, event, performer = asyncio.run(_run())
    assert outcome.status == JobStatus.SUCCESS
    assert outcome.enrichment_stripped is True
    assert outcome.stripped_field == "image"
    assert event.hero_image_url is None
    assert performer.name == "Jo"
    assert event.performer_id == performer.id


class PerformerFailingProcessor(DetailProcessor):
    async def _attach_performer(self, session, performer, source_id):
        raise PartialEnrichmentError("performer insert failed", field="performer")


def test_failed_performer_is_stripped_but_image_kept(seeded) -> None:
    session_factory, _ = seeded
    processor = PerformerFailingProcessor(session_factory, asset_store=FakeAssetStore())
    extractor = FakeExtractor(
        details={"railway": RawDetail(image_url="https://cdn.example/hero.jpg", performer_name="Jo")}
    )

    async def _run():
        outcome = await processor.process(DetailJob(source_name="inquizition", listing=_listing()), extractor=extractor)
        async with session_factory() as session:
            event = (await session.execute(select(Event))).scalar_one()
            performers = (await session.execute(select(func.count(Performer.id)))).scalar_one()
        return outcome, event, performers

    outcome, event, performers = asyncio.run(_run())
    assert outcome.status == JobStatus.SUCCESS
    assert outcome.stripped_field == "performer"
    assert event.hero_image_url == "ab/hero.jpg"
    assert event.performer_id is None
    assert performers == 0


def test_non_json_detail_body_is_recorded_as_failed_job(seeded) -> None:
    session_factory, _ = seeded
    extractor = JsonFeedExtractor(
        "inquizition",
        "https://feed.example/quizzes.json",
        detail_url_template="https://feed.example/quizzes/{ref}.json",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>")),
    )

    async def _run():
        outcome = await DetailProcessor(session_factory).process(
            DetailJob(source_name="inquizition", listing=_listing()), extractor=extractor
        )
        report = await _coordinator(session_factory, []).run("inquizition", extractor=extractor)
        async with session_factory() as session:
            runs = (await session.execute(select(JobRun).order_by(JobRun.id))).scalars().all()
        return outcome, report, runs

    outcome, report, runs = asyncio.run(_run())
    assert outcome.status == JobStatus.ERROR
    assert outcome.reason == "invalid_json"
    assert report.error == "invalid_json"
    assert [(run.job_type, run.status) for run in runs] == [("detail", "error"), ("index", "error")]
    assert runs[0].error.startswith("invalid_json")


def _coordinator(session_factory, enqueued: list):
    def enqueue(job: DetailJob, delay: int) -> None:
        enqueued.append((job, delay))

    return IndexCoordinator(session_factory, enqueue, rate_limiter=RateLimiter(50))


def test_index_run_skips_listings_seen_inside_freshness_window(seeded) -> None:
    session_factory, _ = seeded
    extractor = FakeExtractor(listings=[_listing("railway"), _listing("crown", name="The Crown", address="1 King St")])
    enqueued: list = []

    async def _run():
        await DetailProcessor(session_factory).process(
            DetailJob(source_name="inquizition", listing=_listing("railway")), extractor=extractor
        )
        report = await _coordinator(session_factory, enqueued).run("inquizition", extractor=extractor)
        async with session_factory() as session:
            run = await session.get(JobRun, report.job_run_id)
        return report, run

    report, run = asyncio.run(_run())
    assert report.total == 2
    assert report.skipped == 1
    assert report.enqueued == 1
    assert [job.listing.ref for job, _ in enqueued] == ["crown"]
    assert run.status == "success"
    assert run.job_type == "index"
    assert run.metadata_json["enqueued"] == 1


def test_force_refresh_bypasses_freshness_and_throttle(seeded) -> None:
    session_factory, _ = seeded
    listings = [_listing(f"q{i}", name=f"Venue {i}", address=f"{i} Road") for i in range(5)]
    extractor = FakeExtractor(listings=listings)
    enqueued: list = []

    async def _run():
        await DetailProcessor(session_factory).process(
            DetailJob(source_name="inquizition", listing=listings[0]), extractor=extractor
        )
        return await _coordinator(session_factory, enqueued).run(
            "inquizition", IngestOptions(force=True), extractor=extractor
        )

    report = asyncio.run(_run())
    assert report.skipped == 0
    assert report.enqueued == 5
    assert all(job.force for job, _ in enqueued)
    assert [delay for _, delay in enqueued] == [0, 0, 0, 0, 0]


def test_index_run_applies_limit_and_hourly_cap(seeded) -> None:
    session_factory, _ = seeded
    listings = [_listing(f"q{i}", name=f"Venue {i}", address=f"{i} Road") for i in range(10)]
    enqueued: list = []

    report = asyncio.run(
        _coordinator(session_factory, enqueued).run(
            "inquizition",
            IngestOptions(limit=4, max_jobs_per_hour=2),
            extractor=FakeExtractor(listings=listings),
        )
    )
    assert report.total == 10
    assert report.limited_to == 4
    assert [delay for _, delay in enqueued] == [0, 1800, 3600, 5400]


def test_disabled_source_is_skipped(seeded) -> None:
    session_factory, _ = seeded

    async def _run():
        async with session_factory() as session:
            async with session.begin():
                source = (await session.execute(select(Source))).scalar_one()
                source.enabled = False
        report = await _coordinator(session_factory, []).run("inquizition", extractor=FakeExtractor())
        async with session_factory() as session:
            run = await session.get(JobRun, report.job_run_id)
        return report, run

    report, run = asyncio.run(_run())
    assert report.error == "source_disabled"
    assert run.status == "skipped"


def test_index_transient_error_propagates(seeded) -> None:
    session_factory, _ = seeded
    extractor = FakeExtractor(index_error=TransientFetchError("503 from source"))

    async def _run():
        try:
            await _coordinator(session_factory, []).run("inquizition", extractor=extractor)
        except TransientFetchError:
            return True
        return False

    assert asyncio.run(_run()) is True


def test_detail_job_round_trips_through_json() -> None:
    job = DetailJob(source_name="inquizition", listing=_listing(), force=True)
    restored = DetailJob.model_validate(job.model_dump(mode="json"))
    assert restored == job
    assert restored.listing.extra == LONDON


def test_recently_seen_window_uses_now(seeded) -> None:
    session_factory, _ = seeded
    extractor = FakeExtractor(listings=[_listing("railway")])
    enqueued: list = []

    async def _run():
        await DetailProcessor(session_factory).process(
            DetailJob(source_name="inquizition", listing=_listing("railway")),
            extractor=extractor,
            now=utcnow() - timedelta(days=10),
        )
        return await _coordinator(session_factory, enqueued).run("inquizition", extractor=extractor)

    report = asyncio.run(_run())
    assert report.skipped == 0
    assert report.enqueued == 1
