"""Celery tasks. Each task body is a coroutine run to completion in its own loop."""
from __future__ import annotations

import asyncio
from typing import Any, Coroutine, TypeVar

from quiz_ingest.config import settings
from quiz_ingest.db import engine

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` and drop pooled connections bound to the finished loop."""

    async def _wrapped() -> T:
        try:
            return await coro
        finally:
            await engine.dispose()

    return asyncio.run(_wrapped())


def retry_countdown(retries: int) -> int:
    return settings.JOB_RETRY_BACKOFF_S * (2 ** retries)


def retry_budget() -> int:
    """Celery ``max_retries`` for a setting that counts total attempts."""
    return max(settings.JOB_MAX_ATTEMPTS - 1, 0)
