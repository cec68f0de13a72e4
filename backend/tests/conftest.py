from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import quiz_ingest.models  # noqa: F401  (registers every table on Base.metadata)
from quiz_ingest.db import Base
from quiz_ingest.models.location import City, Country
from quiz_ingest.models.source import Source


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database per test, with SAVEPOINT support enabled for aiosqlite."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'quiz.db'}", poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _no_pysqlite_transactions(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def seeded(session_factory):
    """Database with one enabled source and the London/GB locale."""

    async def _seed() -> dict[str, int]:
        async with session_factory() as session:
            async with session.begin():
                source = Source(name="inquizition", base_url="https://inquizition.example/api/quizzes.json")
                country = Country(code="GB", name="United Kingdom")
                session.add_all([source, country])
                await session.flush()
                city = City(name="London", slug="london", country_id=country.id)
                session.add(city)
                await session.flush()
                return {"source_id": source.id, "country_id": country.id, "city_id": city.id}

    ids = asyncio.run(_seed())
    return session_factory, ids
