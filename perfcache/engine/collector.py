"""PERFCACHE — Daily Collector.

Fills the day ledger with one row per (client, platform, closed day).
"""

from datetime import date, datetime, timedelta
from typing import Callable, Dict

from pydantic import BaseModel

from perfcache.connectors.base import UpstreamFetcher
from perfcache.core.errors import PerfCacheError
from perfcache.core.logging import get_logger
from perfcache.engine.reconciler import sum_campaigns
from perfcache.stores.day_ledger import DayLedgerStore
from perfcache.stores.hot_cache import utcnow

logger = get_logger("engine.collector")

LEDGER_SOURCE_DAILY = "daily_collection"


class CollectionReport(BaseModel):
    day: date
    collected: int = 0
    failed: int = 0
    failures: Dict[str, str] = {}


class DailyCollector:
    def __init__(
        self,
        fetcher: UpstreamFetcher,
        ledger: DayLedgerStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fetcher = fetcher
        self.ledger = ledger
        self.clock = clock

    async def collect_day(self, client_id: str, platform: str, day: date) -> None:
        """Fetch one closed day and upsert its ledger row."""
        if day >= self.clock().date():
            raise ValueError(f"{day} has not closed yet")
        campaigns = await self.fetcher.fetch_range(client_id, platform, day, day)
        counters, funnel = sum_campaigns(campaigns)
        self.ledger.upsert_day(client_id, platform, day, counters, funnel, LEDGER_SOURCE_DAILY)
        logger.info(
            f"Collected {day} ({len(campaigns)} campaigns)",
            extra={"client_id": client_id, "platform": platform, "period_id": day.isoformat()},
        )

    async def collect_yesterday(self) -> CollectionReport:
        day = self.clock().date() - timedelta(days=1)
        report = CollectionReport(day=day)
        for platform in self.fetcher.platforms:
            for client_id in self.fetcher.adapter_for(platform).client_ids():
                try:
                    await self.collect_day(client_id, platform, day)
                except PerfCacheError as e:
                    report.failed += 1
                    report.failures[f"{client_id}:{platform}"] = f"{type(e).__name__}: {e}"
                    logger.error(
                        f"Collection failed for {day}: {e}",
                        extra={"client_id": client_id, "platform": platform},
                    )
                else:
                    report.collected += 1
        logger.info(f"Daily collection for {day}: {report.collected} ok, {report.failed} failed")
        return report
