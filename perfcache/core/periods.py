"""PERFCACHE — Period Classifier.

Decides whether a requested date range is a *current* period (served from
the hot cache with live refresh) or *historical* (durable storage only).

A range is current only when it lines up exactly with a whole ISO week
(Monday to Sunday) or a whole calendar month AND its end date is on or after
today. Everything else, including single days, partial ranges and periods
that have already closed, is historical.
"""

import calendar
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterator, List, Union

from pydantic import BaseModel, model_validator

from perfcache.core.errors import ClassificationAmbiguous


class PeriodType(str, Enum):
    """Granularity of a period key."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    CUSTOM = "custom"  # Not aligned to any calendar period


ARCHIVABLE_TYPES = (PeriodType.DAY, PeriodType.WEEK, PeriodType.MONTH)
HOT_TYPES = (PeriodType.WEEK, PeriodType.MONTH)


class DateRange(BaseModel):
    """Inclusive ``[start, end]`` date range."""

    start: date
    end: date

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError(f"range end {self.end} precedes start {self.start}")
        return self

    @property
    def day_count(self) -> int:
        return (self.end - self.start).days + 1

    def iter_days(self) -> Iterator[date]:
        for offset in range(self.day_count):
            yield self.start + timedelta(days=offset)

    def __str__(self) -> str:
        return f"{self.start.isoformat()} → {self.end.isoformat()}"


class PeriodKey(BaseModel):
    """Natural key of a hot-cache or archive entry."""

    client_id: str
    platform: str
    period_type: PeriodType
    period_id: str

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.client_id}:{self.platform}:{self.period_type.value}:{self.period_id}"


class Classification(BaseModel):
    """Outcome of classifying a range against a reference time."""

    is_current: bool
    period_type: PeriodType
    period_id: str
    range: DateRange
    closed: bool = False  # range.end is strictly before today

    model_config = {"frozen": True}

    @property
    def archivable(self) -> bool:
        """Whole calendar period that has fully ended."""
        return self.closed and self.period_type in ARCHIVABLE_TYPES

    def key(self, client_id: str, platform: str) -> PeriodKey:
        return PeriodKey(
            client_id=client_id,
            platform=platform,
            period_type=self.period_type,
            period_id=self.period_id,
        )


# ─────────────────────────────────────────────
# CALENDAR HELPERS
# ─────────────────────────────────────────────


def _as_date(reference_now: Union[date, datetime]) -> date:
    if isinstance(reference_now, datetime):
        return reference_now.date()
    return reference_now


def month_range(year: int, month: int) -> DateRange:
    last_day = calendar.monthrange(year, month)[1]
    return DateRange(start=date(year, month, 1), end=date(year, month, last_day))


def week_range(day: date) -> DateRange:
    """ISO week (Monday to Sunday) containing ``day``."""
    monday = day - timedelta(days=day.weekday())
    return DateRange(start=monday, end=monday + timedelta(days=6))


def month_period_id(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


def week_period_id(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def period_range(period_type: PeriodType, period_id: str) -> DateRange:
    """Inverse of the period-id helpers: calendar bounds for an id."""
    if period_type == PeriodType.MONTH:
        year, month = period_id.split("-")
        return month_range(int(year), int(month))
    if period_type == PeriodType.WEEK:
        year, week = period_id.split("-W")
        monday = date.fromisocalendar(int(year), int(week), 1)
        return DateRange(start=monday, end=monday + timedelta(days=6))
    if period_type == PeriodType.DAY:
        day = date.fromisoformat(period_id)
        return DateRange(start=day, end=day)
    start, end = period_id.split("_")
    return DateRange(start=date.fromisoformat(start), end=date.fromisoformat(end))


def current_period(period_type: PeriodType, reference_now: Union[date, datetime]) -> DateRange:
    today = _as_date(reference_now)
    if period_type == PeriodType.MONTH:
        return month_range(today.year, today.month)
    if period_type == PeriodType.WEEK:
        return week_range(today)
    return DateRange(start=today, end=today)


def _is_whole_month(rng: DateRange) -> bool:
    return rng == month_range(rng.start.year, rng.start.month)


def _is_whole_week(rng: DateRange) -> bool:
    return rng.start.weekday() == 0 and rng.day_count == 7


# ─────────────────────────────────────────────
# CLASSIFIER
# ─────────────────────────────────────────────


def classify(reference_now: Union[date, datetime], rng: DateRange) -> Classification:
    """Classify ``rng`` relative to ``reference_now``.

    Only whole weeks and whole months can be current. A single day gets a
    ``day`` key so it can be archived once closed, but is never current.
    """
    today = _as_date(reference_now)

    if rng.day_count == 1:
        period_type, period_id = PeriodType.DAY, rng.start.isoformat()
    elif _is_whole_month(rng):
        period_type, period_id = PeriodType.MONTH, month_period_id(rng.start)
    elif _is_whole_week(rng):
        period_type, period_id = PeriodType.WEEK, week_period_id(rng.start)
    else:
        period_type = PeriodType.CUSTOM
        period_id = f"{rng.start.isoformat()}_{rng.end.isoformat()}"

    is_current = period_type in HOT_TYPES and rng.end >= today
    return Classification(
        is_current=is_current,
        period_type=period_type,
        period_id=period_id,
        range=rng,
        closed=rng.end < today,
    )


def is_current(reference_now: Union[date, datetime], rng: DateRange) -> bool:
    return classify(reference_now, rng).is_current


def ensure_single_period(classification: Classification) -> Classification:
    """Reject custom ranges that straddle calendar months.

    Such ranges cannot be answered by one tier walk; the resolver splits
    them per month and resolves every part on its own.
    """
    rng = classification.range
    if classification.period_type == PeriodType.CUSTOM and (
        (rng.start.year, rng.start.month) != (rng.end.year, rng.end.month)
    ):
        raise ClassificationAmbiguous(
            f"Range {rng} spans partial calendar months; split it per month"
        )
    return classification


def split_by_month(rng: DateRange) -> List[DateRange]:
    """Cut a range at calendar-month boundaries."""
    parts: List[DateRange] = []
    cursor = rng.start
    while cursor <= rng.end:
        month_end = month_range(cursor.year, cursor.month).end
        part_end = min(month_end, rng.end)
        parts.append(DateRange(start=cursor, end=part_end))
        cursor = part_end + timedelta(days=1)
    return parts


def retention_cutoff(
    period_type: PeriodType, reference_now: Union[date, datetime], periods_back: int
) -> date:
    """Start date of the oldest period kept when retaining ``periods_back``
    trailing periods before the current one."""
    today = _as_date(reference_now)
    if period_type == PeriodType.MONTH:
        months = today.year * 12 + (today.month - 1) - periods_back
        return date(months // 12, months % 12 + 1, 1)
    if period_type == PeriodType.WEEK:
        return week_range(today).start - timedelta(weeks=periods_back)
    return today - timedelta(days=periods_back)
