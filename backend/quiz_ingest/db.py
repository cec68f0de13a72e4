"""Database plumbing: async engine, sessions, declarative base, conflict-safe insert."""
from __future__ import annotations

from sqlalchemy import JSON, MetaData
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from quiz_ingest.config import settings
from quiz_ingest.errors import ConflictError

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# JSONB on Postgres, plain JSON on the SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Explicitly named constraints keep their names; the rest get stable ones.
NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


async def get_session() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency: one session per request."""
    async with async_session_factory() as session:
        yield session


async def insert_or_conflict(session: AsyncSession, obj: object) -> None:
    """Insert ``obj`` inside a SAVEPOINT; a unique violation becomes ConflictError.

    The surrounding transaction stays usable, so callers can re-fetch the row
    a concurrent writer just created.
    """
    try:
        async with session.begin_nested():
            session.add(obj)
    except IntegrityError as exc:
        raise ConflictError(str(exc.orig) if exc.orig is not None else str(exc)) from exc
