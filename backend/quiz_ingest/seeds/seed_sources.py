"""Sync Source reference data from ``sources.yaml``.

Rows are keyed by ``name``. Entries present in the file are inserted or
updated; rows missing from the file are left alone (disable them in the file
with ``enabled: false`` instead of deleting them).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import psycopg
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quiz_ingest import models  # noqa: F401  (registers every table)
from quiz_ingest.config import settings
from quiz_ingest.db import Base, async_session_factory, engine
from quiz_ingest.logging_config import setup_logging
from quiz_ingest.models.source import Source

logger = logging.getLogger(__name__)


class SourceEntry(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    base_url: str
    website_url: str | None = None
    enabled: bool = True
    extractor: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _slug_like(cls, value: str) -> str:
        value = value.strip().lower()
        if not value.replace("_", "").replace("-", "").isalnum():
            raise ValueError(f"source name must be slug-like: {value!r}")
        return value

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be http(s): {value!r}")
        return value


@dataclass
class SyncStats:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_invalid: int = 0


def load_entries(path: Path) -> tuple[list[SourceEntry], int]:
    """Valid entries plus the number of invalid ones skipped."""
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    items = raw.get("sources", []) if isinstance(raw, dict) else raw
    entries: list[SourceEntry] = []
    invalid = 0
    seen: set[str] = set()
    for item in items or []:
        try:
            entry = SourceEntry.model_validate(item)
        except ValidationError as exc:
            invalid += 1
            logger.warning("Invalid source entry skipped", extra={"entry": item, "error": str(exc)})
            continue
        if entry.name in seen:
            invalid += 1
            logger.warning("Duplicate source entry skipped", extra={"source": entry.name})
            continue
        seen.add(entry.name)
        entries.append(entry)
    return entries, invalid


def _apply(src: Source, entry: SourceEntry) -> bool:
    changed = False
    values = {
        "base_url": entry.base_url,
        "website_url": entry.website_url,
        "enabled": entry.enabled,
        "extractor_json": entry.extractor or None,
    }
    for attr, value in values.items():
        if getattr(src, attr) != value:
            setattr(src, attr, value)
            changed = True
    return changed


async def sync_sources(
    path: str | Path | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SyncStats:
    path = Path(path or settings.SOURCES_YAML_PATH)
    factory = session_factory or async_session_factory
    entries, invalid = load_entries(path)
    stats = SyncStats(skipped_invalid=invalid)

    async with factory() as session:
        existing = {
            src.name: src
            for src in (await session.execute(select(Source))).scalars().all()
        }
        for entry in entries:
            src = existing.get(entry.name)
            if src is None:
                session.add(
                    Source(
                        name=entry.name,
                        base_url=entry.base_url,
                        website_url=entry.website_url,
                        enabled=entry.enabled,
                        extractor_json=entry.extractor or None,
                    )
                )
                stats.inserted += 1
            elif _apply(src, entry):
                stats.updated += 1
            else:
                stats.unchanged += 1
        await session.commit()

    logger.info("Source sync completed", extra=asdict(stats))
    return stats


async def create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def summarize_db_counts() -> dict[str, int]:
    """Row counts over the sync DSN, for the CLI summary line."""
    dsn = settings.DATABASE_URL_SYNC.replace("postgresql+psycopg://", "postgresql://", 1)
    try:
        with psycopg.connect(dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select count(*), count(*) filter (where enabled) from sources")
                total, enabled = cur.fetchone()
    except psycopg.Error as exc:
        logger.warning("Could not summarize sources", extra={"error": str(exc)})
        return {}
    return {"sources_total": int(total), "sources_enabled": int(enabled)}


async def _main() -> SyncStats:
    await create_schema()
    try:
        return await sync_sources()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging("seed")
    asyncio.run(_main())
    counts = summarize_db_counts()
    if counts:
        logger.info("DB counts after sync", extra=counts)
