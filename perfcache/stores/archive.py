"""PERFCACHE — Archive Store.

Closed-period summaries. An entry is written once when its period closes
(or when a historical gap is backfilled) and only ever overwritten by a
re-archival of the same key. Age never expires it; only retention pruning
removes it.
"""

from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel

from perfcache.core.periods import DateRange, PeriodKey, PeriodType
from perfcache.models.store_models import ArchiveEntry
from perfcache.models.summary_models import PeriodSummary
from perfcache.stores.sql_store import SQLStore, as_utc


class ArchivedSummary(BaseModel):
    """Archive row decoded into engine types."""

    key: PeriodKey
    range: DateRange
    summary: PeriodSummary
    archived_at: datetime
    data_source: str = ""


def _decode(row: ArchiveEntry) -> ArchivedSummary:
    return ArchivedSummary(
        key=PeriodKey(
            client_id=row.client_id,
            platform=row.platform,
            period_type=PeriodType(row.period_type),
            period_id=row.period_id,
        ),
        range=DateRange(start=row.period_start, end=row.period_end),
        summary=PeriodSummary.model_validate_json(row.summary_json),
        archived_at=as_utc(row.archived_at),
        data_source=row.data_source,
    )


def _natural_key(key: PeriodKey) -> dict:
    return {
        "client_id": key.client_id,
        "platform": key.platform,
        "period_type": key.period_type.value,
        "period_id": key.period_id,
    }


class ArchiveStore:
    def __init__(self, store: SQLStore):
        self.store = store

    def get(self, key: PeriodKey) -> Optional[ArchivedSummary]:
        row = self.store.get(ArchiveEntry, **_natural_key(key))
        return _decode(row) if row else None

    def upsert(
        self,
        key: PeriodKey,
        rng: DateRange,
        summary: PeriodSummary,
        data_source: str,
    ) -> ArchivedSummary:
        row = self.store.upsert(
            ArchiveEntry,
            _natural_key(key),
            {
                "period_start": rng.start,
                "period_end": rng.end,
                "summary_json": summary.model_dump_json(),
                "data_source": data_source,
                "archived_at": datetime.now(timezone.utc),
            },
        )
        return _decode(row)

    def entries(
        self, period_type: Optional[PeriodType] = None, client_id: Optional[str] = None
    ) -> List[ArchivedSummary]:
        conditions = []
        if period_type is not None:
            conditions.append(ArchiveEntry.period_type == period_type.value)
        if client_id is not None:
            conditions.append(ArchiveEntry.client_id == client_id)
        rows = self.store.query(
            ArchiveEntry, *conditions, order_by=ArchiveEntry.period_start
        )
        return [_decode(row) for row in rows]

    def delete_older_than(self, period_type: PeriodType, cutoff: date) -> int:
        """Remove entries of ``period_type`` whose period starts before ``cutoff``."""
        return self.store.delete_where(
            ArchiveEntry,
            ArchiveEntry.period_type == period_type.value,
            ArchiveEntry.period_start < cutoff,
        )

    def count(self, period_type: Optional[PeriodType] = None) -> int:
        if period_type is None:
            return self.store.count(ArchiveEntry)
        return self.store.count(ArchiveEntry, ArchiveEntry.period_type == period_type.value)
