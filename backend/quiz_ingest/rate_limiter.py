"""Per-source throttling of detail jobs.

Two ways to assign delays:

* stateless, derived only from (count, index, cap): fine for a single index
  run, because items ``i`` and ``i + cap`` always land exactly one hour apart;
* persisted, through a ``ScheduleCursor`` row locked ``FOR UPDATE``: every
  index run for the same source takes its slots after the previous run's, so
  the cap holds across runs and workers.

The limiter only enqueues; it never runs the work itself.
"""
from __future__ import annotations

import inspect
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quiz_ingest.config import settings
from quiz_ingest.core.timeutil import as_utc, utcnow
from quiz_ingest.errors import ValidationError
from quiz_ingest.models.ops import ScheduleCursor

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600

# (item, index, delay_seconds) -> None; may raise on a malformed item.
EnqueueFn = Callable[[Any, int, int], Any]

_MALFORMED_ITEM_ERRORS = (ValidationError, ValueError, TypeError, KeyError)


def compute_hourly_delays(count: int, max_per_hour: int) -> list[int]:
    """Delay (seconds) for each of ``count`` items under a ``max_per_hour`` cap.

    Item ``i`` is placed at ``(i // cap) * 3600 + (i % cap) * floor(3600 / cap)``.
    Any half-open 3600 s window therefore contains at most ``cap`` items.
    """
    if count <= 0:
        return []
    if max_per_hour <= 0:
        raise ValueError("max_per_hour must be positive")
    step = SECONDS_PER_HOUR // max_per_hour
    return [(i // max_per_hour) * SECONDS_PER_HOUR + (i % max_per_hour) * step for i in range(count)]


def compute_incremental_delays(count: int, interval: int) -> list[int]:
    """Plain ``index * interval`` spacing, used when no hourly cap applies."""
    return [i * max(interval, 0) for i in range(max(count, 0))]


def slot_spacing(max_per_hour: int) -> int:
    return math.ceil(SECONDS_PER_HOUR / max_per_hour)


@dataclass(slots=True)
class ScheduleResult:
    scheduled: int = 0
    failed: int = 0
    delays: list[int] = field(default_factory=list)


class ScheduleCursorStore:
    """Persisted next-free-slot per key, advanced atomically."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _locked_cursor(self, session: AsyncSession, key: str, now: datetime) -> ScheduleCursor:
        stmt = select(ScheduleCursor).where(ScheduleCursor.key == key).with_for_update()
        cursor = (await session.execute(stmt)).scalar_one_or_none()
        if cursor is not None:
            return cursor
        try:
            async with session.begin_nested():
                cursor = ScheduleCursor(key=key, next_slot_at=now)
                session.add(cursor)
        except IntegrityError:
            # Another worker created the row first; lock theirs.
            cursor = (await session.execute(stmt)).scalar_one()
        return cursor

    async def reserve(
        self, key: str, count: int, max_per_hour: int, *, now: datetime | None = None
    ) -> list[int]:
        """Reserve ``count`` consecutive slots and return their delays from ``now``."""
        if count <= 0:
            return []
        now = now or utcnow()
        spacing = slot_spacing(max_per_hour)
        async with self.session_factory() as session:
            async with session.begin():
                cursor = await self._locked_cursor(session, key, now)
                start = max(as_utc(cursor.next_slot_at), now)
                offset = math.ceil((start - now).total_seconds())
                cursor.next_slot_at = now + timedelta(seconds=offset + count * spacing)
        logger.debug(
            "Reserved schedule slots",
            extra={"cursor_key": key, "count": count, "first_delay_s": offset, "spacing_s": spacing},
        )
        return [offset + i * spacing for i in range(count)]


class RateLimiter:
    def __init__(
        self,
        max_per_hour: int | None = None,
        *,
        interval_s: int | None = None,
        cursor_store: ScheduleCursorStore | None = None,
    ):
        self.max_per_hour = max_per_hour if max_per_hour is not None else settings.MAX_JOBS_PER_HOUR
        self.interval_s = interval_s if interval_s is not None else settings.JOB_DELAY_INTERVAL_S
        self.cursor_store = cursor_store

    def compute_delays(self, count: int, *, force: bool = False, offset: int = 0) -> list[int]:
        """Stateless delays for items ``offset .. offset + count - 1`` of a batch."""
        if force:
            return [0] * count
        if self.max_per_hour:
            return compute_hourly_delays(offset + count, self.max_per_hour)[offset:]
        return compute_incremental_delays(offset + count, self.interval_s)[offset:]

    async def _delays(self, count: int, *, force: bool, cursor_key: str | None, offset: int) -> list[int]:
        if force or count == 0:
            return [0] * count
        if self.cursor_store is not None and cursor_key and self.max_per_hour:
            return await self.cursor_store.reserve(cursor_key, count, self.max_per_hour)
        return self.compute_delays(count, offset=offset)

    async def schedule(
        self,
        items: Sequence[Any],
        enqueue: EnqueueFn | Callable[[Any, int, int], Awaitable[Any]],
        *,
        force: bool = False,
        cursor_key: str | None = None,
    ) -> ScheduleResult:
        """Enqueue every item with its slot delay.

        A malformed item is logged and re-attempted once in a fallback slot
        after the batch; it never aborts the rest.
        """
        result = ScheduleResult()
        delays = await self._delays(len(items), force=force, cursor_key=cursor_key, offset=0)
        retry: list[int] = []

        for index, (item, delay) in enumerate(zip(items, delays)):
            if await self._try_enqueue(enqueue, item, index, delay, final=False):
                result.scheduled += 1
                result.delays.append(delay)
            else:
                retry.append(index)

        if retry:
            fallback = await self._delays(len(retry), force=force, cursor_key=cursor_key, offset=len(items))
            for index, delay in zip(retry, fallback):
                if await self._try_enqueue(enqueue, items[index], index, delay, final=True):
                    result.scheduled += 1
                    result.delays.append(delay)
                else:
                    result.failed += 1
        return result

    async def _try_enqueue(self, enqueue, item: Any, index: int, delay: int, *, final: bool) -> bool:
        try:
            outcome = enqueue(item, index, delay)
            if inspect.isawaitable(outcome):
                await outcome
            return True
        except _MALFORMED_ITEM_ERRORS as exc:
            if final:
                logger.error(
                    "Item could not be scheduled, giving up",
                    extra={"index": index, "delay_s": delay, "error": str(exc)},
                )
            else:
                logger.warning(
                    "Malformed item, retrying in fallback slot",
                    extra={"index": index, "delay_s": delay, "error": str(exc)},
                )
            return False
