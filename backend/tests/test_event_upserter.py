import asyncio
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from quiz_ingest import event_upserter
from quiz_ingest.core.timeutil import as_utc
from quiz_ingest.event_upserter import UpsertAction, diff_event, find_or_create_performer, upsert_event, venue_lock_stmt
from quiz_ingest.models.event import Event, EventSource, Frequency
from quiz_ingest.models.location import Venue
from quiz_ingest.schemas.listing import EventInput

T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _event_input(**kw) -> EventInput:
    data = {"name": "Pub Quiz", "day_of_week": 3, "start_time": time(20, 0), "entry_fee_cents": 250} | kw
    return EventInput(**data)


async def _make_venue(session_factory, city_id: int) -> Venue:
    async with session_factory() as session:
        async with session.begin():
            venue = Venue(name="The Railway", slug="the-railway-london", address="12 High St", city_id=city_id)
            session.add(venue)
        return venue


async def _upsert(session_factory, venue: Venue, data: EventInput, source_id: int, now: datetime):
    async with session_factory() as session:
        async with session.begin():
            return await upsert_event(session, venue, data, source_id, source_url="https://x.example/1", now=now)


def test_repeat_upsert_is_unchanged_and_only_moves_last_seen(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        first = await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0)
        second = await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0 + timedelta(days=1))
        async with session_factory() as session:
            events = (await session.execute(select(func.count(Event.id)))).scalar_one()
            sources = (await session.execute(select(EventSource))).scalars().all()
        return first, second, events, sources

    first, second, events, sources = asyncio.run(_run())
    assert first.action == UpsertAction.CREATED
    assert second.action == UpsertAction.UNCHANGED
    assert second.changed_fields == ()
    assert second.event.id == first.event.id
    assert events == 1
    assert len(sources) == 1
    assert as_utc(sources[0].last_seen_at) == T0 + timedelta(days=1)


def test_changed_fee_is_an_update_of_that_field_only(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0)
        result = await _upsert(session_factory, venue, _event_input(entry_fee_cents=300), ids["source_id"], T0)
        async with session_factory() as session:
            stored = await session.get(Event, result.event.id)
        return result, stored

    result, stored = asyncio.run(_run())
    assert result.action == UpsertAction.UPDATED
    assert result.changed_fields == ("entry_fee_cents",)
    assert stored.entry_fee_cents == 300


def test_changed_description_alone_is_an_update(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        created = await _upsert(session_factory, venue, _event_input(description="General knowledge"), ids["source_id"], T0)
        result = await _upsert(
            session_factory, venue, _event_input(description="Music round added"), ids["source_id"], T0
        )
        async with session_factory() as session:
            stored = await session.get(Event, result.event.id)
            events = (await session.execute(select(func.count(Event.id)))).scalar_one()
        return created, result, stored, events

    created, result, stored, events = asyncio.run(_run())
    assert created.action == UpsertAction.CREATED
    assert result.action == UpsertAction.UPDATED
    assert result.changed_fields == ("description",)
    assert stored.description == "Music round added"
    assert stored.entry_fee_cents == 250
    assert events == 1


def test_venue_row_is_locked_before_event_lookup(seeded, monkeypatch) -> None:
    session_factory, ids = seeded
    calls: list[str] = []
    real_lock, real_find = event_upserter.lock_venue, event_upserter.find_event

    async def recording_lock(session, venue_id):
        calls.append("lock")
        await real_lock(session, venue_id)

    async def recording_find(session, venue_id, day_of_week):
        calls.append("find")
        return await real_find(session, venue_id, day_of_week)

    monkeypatch.setattr(event_upserter, "lock_venue", recording_lock)
    monkeypatch.setattr(event_upserter, "find_event", recording_find)

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0)

    asyncio.run(_run())
    assert calls == ["lock", "find"]
    compiled = str(venue_lock_stmt(7).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in compiled
    assert "venues" in compiled


def test_last_seen_never_moves_backwards(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0)
        result = await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0 - timedelta(hours=1))
        return result

    result = asyncio.run(_run())
    assert as_utc(result.event_source.last_seen_at) > T0


def test_different_day_is_a_separate_event(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        a = await _upsert(session_factory, venue, _event_input(day_of_week=3), ids["source_id"], T0)
        b = await _upsert(session_factory, venue, _event_input(day_of_week=5), ids["source_id"], T0)
        return a, b

    a, b = asyncio.run(_run())
    assert b.action == UpsertAction.CREATED
    assert a.event.id != b.event.id


def test_performer_change_alone_is_a_narrow_update(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        venue = await _make_venue(session_factory, ids["city_id"])
        await _upsert(session_factory, venue, _event_input(), ids["source_id"], T0)
        async with session_factory() as session:
            async with session.begin():
                performer = await find_or_create_performer(session, "Quizmaster Jo", ids["source_id"])
        result = await _upsert(
            session_factory, venue, _event_input(performer_id=performer.id), ids["source_id"], T0
        )
        return performer, result

    performer, result = asyncio.run(_run())
    assert result.action == UpsertAction.PERFORMER_UPDATED
    assert result.changed_fields == ()
    assert result.event.performer_id == performer.id


def test_performer_find_or_create_updates_image_only(seeded) -> None:
    session_factory, ids = seeded

    async def _run():
        async with session_factory() as session:
            async with session.begin():
                first = await find_or_create_performer(session, "Quizmaster Jo", ids["source_id"])
                second = await find_or_create_performer(session, "Quizmaster Jo", ids["source_id"], "ab/abc.jpg")
                third = await find_or_create_performer(session, "Quizmaster Jo", ids["source_id"])
                return first, second, third

    first, second, third = asyncio.run(_run())
    assert first.id == second.id == third.id
    assert third.profile_image == "ab/abc.jpg"


def test_missing_image_never_clears_stored_one() -> None:
    event = Event(
        venue_id=1,
        day_of_week=3,
        start_time=time(20, 0),
        frequency=Frequency.WEEKLY.value,
        entry_fee_cents=250,
        hero_image_url="ab/abc.jpg",
    )
    assert diff_event(event, _event_input(hero_image_url=None)) == {}
    assert diff_event(event, _event_input(hero_image_url="cd/cde.jpg")) == {"hero_image_url": "cd/cde.jpg"}
