"""Parsers for the free-text fields sources publish: schedule, fee, frequency.

Examples::

    parse_time_text("Tuesdays, 6.30pm")      -> ScheduleText(day_of_week=2, start_time=18:30)
    parse_time_text("Every Thursday at 8pm") -> ScheduleText(day_of_week=4, start_time=20:00)
    parse_time_text("Wednesday 20:00")       -> ScheduleText(day_of_week=3, start_time=20:00)
    parse_fee_cents("£2.50")                 -> 250
    parse_fee_cents("Free")                  -> None
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import time
from decimal import Decimal, InvalidOperation

from quiz_ingest.errors import ValidationError
from quiz_ingest.models.event import Frequency

DEFAULT_START_TIME = time(20, 0)

DAYS = {
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
    "sunday": 7,
}

_DAY_RE = re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)s?\b", re.IGNORECASE)
_TIME_12H_MINUTES_RE = re.compile(r"(\d{1,2})[:.](\d{2})\s*(am|pm)")
_TIME_12H_RE = re.compile(r"(\d{1,2})\s*(am|pm)")
_TIME_24H_RE = re.compile(r"(\d{2})[:.](\d{2})")
_FEE_RE = re.compile(r"^([£€$])?\s*(\d+(?:\.\d{1,2})?)$")
_FREE_RE = re.compile(r"free|no charge", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ScheduleText:
    day_of_week: int
    start_time: time


def _clean_time_text(text: str) -> str:
    normalized = text.lower()
    normalized = re.sub(r"every\s+", "", normalized)
    normalized = re.sub(r"\bat\s+", "", normalized)
    normalized = normalized.replace(",", "")
    # Drop parentheticals, continuation lines and trailing "Book: ..." blurbs.
    normalized = re.split(r"\(.*\)|\n|book:.*$", normalized, maxsplit=1, flags=re.IGNORECASE)[0]
    return normalized.strip()


def parse_day_of_week(text: str | None) -> int:
    match = _DAY_RE.search(str(text or ""))
    if not match:
        raise ValidationError(f"could not parse day from {text!r}", reason="invalid_day_of_week")
    return DAYS[match.group(1).lower()]


def _to_24h(hour: int, minute: int, period: str) -> time:
    if not (1 <= hour <= 12 and 0 <= minute <= 59):
        raise ValidationError(f"invalid 12h time {hour}:{minute:02d}{period}", reason="invalid_time")
    if period == "am":
        hour = 0 if hour == 12 else hour
    else:
        hour = 12 if hour == 12 else hour + 12
    return time(hour, minute)


def parse_time(text: str | None) -> time:
    value = str(text or "").lower()
    if match := _TIME_12H_MINUTES_RE.search(value):
        return _to_24h(int(match.group(1)), int(match.group(2)), match.group(3))
    if match := _TIME_12H_RE.search(value):
        return _to_24h(int(match.group(1)), 0, match.group(2))
    if match := _TIME_24H_RE.search(value):
        hour, minute = int(match.group(1)), int(match.group(2))
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return time(hour, minute)
        raise ValidationError(f"invalid 24h time in {text!r}", reason="invalid_time")
    raise ValidationError(f"could not parse time from {text!r}", reason="invalid_time")


def parse_time_text(text: str | None) -> ScheduleText:
    """Day + start time from text such as "Wednesdays, 7.30pm".

    A recognizable day with no recognizable time falls back to 20:00.
    """
    if text is None or not str(text).strip():
        raise ValidationError("time text is empty", reason="missing_time_text")
    normalized = _clean_time_text(str(text))
    day = parse_day_of_week(normalized)
    try:
        start = parse_time(normalized)
    except ValidationError:
        start = DEFAULT_START_TIME
    return ScheduleText(day_of_week=day, start_time=start)


def parse_fee_cents(text: str | int | None) -> int | None:
    """'£2.50' -> 250; free / blank / unparseable -> None."""
    if text is None:
        return None
    if isinstance(text, int):
        return text
    value = str(text).strip()
    if not value or _FREE_RE.search(value):
        return None
    match = _FEE_RE.match(value.replace(",", ""))
    if not match:
        return None
    try:
        amount = Decimal(match.group(2))
    except InvalidOperation:
        return None
    return int(amount * 100)


def parse_frequency(text: str | None, default: Frequency = Frequency.WEEKLY) -> Frequency:
    value = str(text or "").strip().lower()
    if not value:
        return default
    if re.search(r"\b(every\s+2\s+weeks?|bi-?weekly|fortnightly)\b", value):
        return Frequency.BIWEEKLY
    if re.search(r"\b(every\s+month|monthly)\b", value):
        return Frequency.MONTHLY
    if re.search(r"\b(every\s+week|weekly|each\s+week)\b", value):
        return Frequency.WEEKLY
    return default
