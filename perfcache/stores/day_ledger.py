"""PERFCACHE — Day-Ledger Store."""

from datetime import date, datetime, timezone
from typing import List

from perfcache.core.periods import DateRange
from perfcache.models.store_models import DayMetricRecord
from perfcache.models.summary_models import Counters, FunnelCounts
from perfcache.stores.sql_store import SQLStore


class DayLedgerStore:
    """One row per (client, platform, day). Re-ingestion overwrites."""

    def __init__(self, store: SQLStore):
        self.store = store

    def upsert_day(
        self,
        client_id: str,
        platform: str,
        day: date,
        counters: Counters,
        funnel: FunnelCounts,
        data_source: str = "",
    ) -> DayMetricRecord:
        values = {
            **counters.model_dump(),
            **funnel.model_dump(),
            "data_source": data_source,
            "updated_at": datetime.now(timezone.utc),
        }
        return self.store.upsert(
            DayMetricRecord,
            {"client_id": client_id, "platform": platform, "day": day},
            values,
        )

    def days_in_range(
        self, client_id: str, platform: str, rng: DateRange
    ) -> List[DayMetricRecord]:
        return self.store.query(
            DayMetricRecord,
            DayMetricRecord.client_id == client_id,
            DayMetricRecord.platform == platform,
            DayMetricRecord.day >= rng.start,
            DayMetricRecord.day <= rng.end,
            order_by=DayMetricRecord.day,
        )
