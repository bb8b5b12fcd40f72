"""PERFCACHE — Hot Period Cache.

Durable cache of current-period summaries keyed by ``PeriodKey``, each with
a last-refreshed timestamp. Reads are pure: ``read`` reports whether the
entry is stale and never triggers a refresh itself. Refreshing is the
background refresher's job.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel

from perfcache.core.periods import DateRange, PeriodKey, PeriodType
from perfcache.models.store_models import HotCacheEntry
from perfcache.models.summary_models import PeriodSummary
from perfcache.stores.sql_store import SQLStore, as_utc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CachedSummary(BaseModel):
    """A decoded hot-cache entry."""

    key: PeriodKey
    range: DateRange
    summary: PeriodSummary
    last_refreshed_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return max((now - self.last_refreshed_at).total_seconds(), 0.0)


class HotRead(BaseModel):
    """Outcome of a cache read: the entry and whether it is stale."""

    entry: CachedSummary
    is_stale: bool
    age_seconds: float


def _decode(row: HotCacheEntry) -> CachedSummary:
    return CachedSummary(
        key=PeriodKey(
            client_id=row.client_id,
            platform=row.platform,
            period_type=PeriodType(row.period_type),
            period_id=row.period_id,
        ),
        range=DateRange(start=row.period_start, end=row.period_end),
        summary=PeriodSummary.model_validate_json(row.summary_json),
        last_refreshed_at=as_utc(row.last_refreshed_at),
    )


def _natural_key(key: PeriodKey) -> dict:
    return {
        "client_id": key.client_id,
        "platform": key.platform,
        "period_type": key.period_type.value,
        "period_id": key.period_id,
    }


class HotPeriodCache:
    def __init__(self, store: SQLStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def get(self, key: PeriodKey) -> Optional[CachedSummary]:
        row = self.store.get(HotCacheEntry, **_natural_key(key))
        return _decode(row) if row else None

    def put(self, key: PeriodKey, rng: DateRange, summary: PeriodSummary) -> CachedSummary:
        """Write-through; stamps ``last_refreshed_at`` with the current time."""
        row = self.store.upsert(
            HotCacheEntry,
            _natural_key(key),
            {
                "period_start": rng.start,
                "period_end": rng.end,
                "summary_json": summary.model_dump_json(),
                "last_refreshed_at": self.clock(),
            },
        )
        return _decode(row)

    def delete(self, key: PeriodKey) -> bool:
        return self.store.delete(HotCacheEntry, **_natural_key(key)) > 0

    def entries(self, period_type: Optional[PeriodType] = None) -> List[CachedSummary]:
        conditions = []
        if period_type is not None:
            conditions.append(HotCacheEntry.period_type == period_type.value)
        return [_decode(row) for row in self.store.query(HotCacheEntry, *conditions)]

    def count(self, period_type: Optional[PeriodType] = None) -> int:
        if period_type is None:
            return self.store.count(HotCacheEntry)
        return self.store.count(HotCacheEntry, HotCacheEntry.period_type == period_type.value)

    @staticmethod
    def is_fresh(entry: CachedSummary, max_age_seconds: float, now: datetime) -> bool:
        return entry.age_seconds(now) < max_age_seconds

    def read(self, key: PeriodKey, max_age_seconds: float) -> Optional[HotRead]:
        entry = self.get(key)
        if entry is None:
            return None
        now = self.clock()
        return HotRead(
            entry=entry,
            is_stale=not self.is_fresh(entry, max_age_seconds, now),
            age_seconds=entry.age_seconds(now),
        )
