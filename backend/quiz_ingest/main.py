"""FastAPI application: liveness/readiness, Prometheus scrape and the admin API."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, multiprocess
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import PlainTextResponse, Response

from quiz_ingest.api.admin import router as admin_router
from quiz_ingest.config import settings
from quiz_ingest.core.timeutil import as_utc
from quiz_ingest.db import get_session
from quiz_ingest.logging_config import SERVICE_NAME, setup_logging
from quiz_ingest.models.ops import JobRun, JobType
from quiz_ingest.models.source import Source

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging("api")
    logger.info("API starting", extra={"env": settings.APP_ENV})
    yield
    logger.info("API shutting down")


app = FastAPI(
    title="Quiz Ingest",
    version="0.1.0",
    description="Quiz-night listings from several directories, resolved into canonical venues and events",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.APP_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)


@app.get("/health", tags=["ops"])
async def health() -> dict[str, str]:
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/ready", tags=["ops"])
async def ready(session: AsyncSession = Depends(get_session)) -> Any:
    """Readiness: the database answers, plus the newest index run per source."""
    try:
        enabled = (
            await session.execute(select(func.count(Source.id)).where(Source.enabled.is_(True)))
        ).scalar_one()
        runs = (
            await session.execute(
                select(Source.name, JobRun.status, JobRun.finished_at)
                .join(JobRun, JobRun.source_id == Source.id)
                .where(JobRun.job_type == JobType.INDEX.value)
                .order_by(JobRun.id.desc())
                .limit(500)
            )
        ).all()
    except SQLAlchemyError as exc:
        logger.error("Readiness check failed", extra={"error": str(exc)})
        return JSONResponse(status_code=503, content={"status": "unavailable", "service": SERVICE_NAME})

    last_runs: dict[str, dict[str, Any]] = {}
    for name, status, finished_at in runs:
        if name not in last_runs:
            finished_at = as_utc(finished_at)
            last_runs[name] = {"status": status, "finished_at": finished_at.isoformat() if finished_at else None}
    return {"status": "ready", "service": SERVICE_NAME, "enabled_sources": enabled, "last_index_runs": last_runs}


@app.get("/metrics", tags=["ops"])
async def metrics() -> Response:
    try:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        data = generate_latest(registry)
    except ValueError:
        # PROMETHEUS_MULTIPROC_DIR unset: single-process registry
        data = generate_latest()
    return PlainTextResponse(content=data, media_type=CONTENT_TYPE_LATEST)
