"""PERFCACHE — Engine Assembly.

Wires the stores, adapters and engine components into one ``MetricsEngine``
shared by the HTTP routes and the scheduler.
"""

from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy.engine import Engine

from perfcache.config import settings
from perfcache.connectors.base import UpstreamFetchAdapter, UpstreamFetcher
from perfcache.connectors.google.adapter import GoogleAdsFetchAdapter
from perfcache.connectors.meta.adapter import MetaFetchAdapter
from perfcache.core.errors import StoreUnavailable
from perfcache.core.logging import get_logger
from perfcache.engine.coalescer import RequestCoalescer
from perfcache.engine.collector import DailyCollector
from perfcache.engine.lifecycle import ArchivalLifecycleManager
from perfcache.engine.refresher import BackgroundRefresher
from perfcache.engine.resolver import TieredSourceResolver
from perfcache.stores.archive import ArchiveStore
from perfcache.stores.day_ledger import DayLedgerStore
from perfcache.stores.hot_cache import HotPeriodCache, utcnow
from perfcache.stores.sql_store import SQLStore

logger = get_logger("engine")


class MetricsEngine:
    """Every long-lived component of the resolution engine."""

    def __init__(
        self,
        store: SQLStore,
        fetcher: UpstreamFetcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.fetcher = fetcher
        self.hot_cache = HotPeriodCache(store, clock=clock)
        self.archive = ArchiveStore(store)
        self.ledger = DayLedgerStore(store)
        self.coalescer = RequestCoalescer(settings.coalesce_ceiling_seconds)
        self.refresher = BackgroundRefresher(
            settings.refresh_cooldown_seconds,
            enabled=settings.background_refresh_enabled,
        )
        self.resolver = TieredSourceResolver(
            self.hot_cache,
            self.archive,
            self.ledger,
            fetcher,
            coalescer=self.coalescer,
            refresher=self.refresher,
            freshness_seconds=settings.freshness_seconds,
            clock=clock,
        )
        self.lifecycle = ArchivalLifecycleManager(self.hot_cache, self.archive, clock=clock)
        self.collector = DailyCollector(fetcher, self.ledger, clock=clock)

    def sweep(self) -> int:
        """Drop expired coalescer entries, refresh cooldown stamps and orphaned refresh errors."""
        try:
            live_keys = [entry.key for entry in self.hot_cache.entries()]
        except StoreUnavailable as e:
            logger.warning(f"Hot cache listing failed during sweep: {e}")
            live_keys = None
        return self.coalescer.sweep() + self.refresher.sweep(live_keys=live_keys)

    async def close(self) -> None:
        await self.refresher.drain()
        await self.fetcher.close()


def default_adapters() -> Mapping[str, UpstreamFetchAdapter]:
    """Adapters for every platform with credentials configured."""
    adapters = {}
    if settings.meta_client_accounts:
        adapters["meta"] = MetaFetchAdapter()
    if settings.google_ads_client_customers:
        adapters["google"] = GoogleAdsFetchAdapter()
    if not adapters:
        logger.warning("No upstream platform configured; live fetches will be rejected")
    return adapters


def build_engine(
    db_engine: Engine,
    adapters: Optional[Mapping[str, UpstreamFetchAdapter]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> MetricsEngine:
    fetcher = UpstreamFetcher(
        default_adapters() if adapters is None else adapters,
        timeout_seconds=settings.upstream_timeout_seconds,
    )
    logger.info(f"Metrics engine ready for platforms: {fetcher.platforms or 'none'}")
    return MetricsEngine(SQLStore(db_engine), fetcher, clock=clock)
