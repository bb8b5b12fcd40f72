"""PERFCACHE — Tiered Source Resolver.

Answers "metrics for this client, platform and date range" by walking the
storage tiers in priority order:

  current period:     hot cache (fresh → return, stale → return + refresh
                      in background) → live fetch (write-through to hot cache)
  historical period:  archive → day ledger → live fetch (backfill into the
                      archive when the range is a whole closed period)

Identical concurrent requests are coalesced into one execution. Upstream
outages never hide cached data: a stale hot entry is still returned, with
a degradation flag. A failed historical backfill is reported as an explicit
no-data result and is never cached.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from perfcache.config import settings
from perfcache.connectors.base import UpstreamFetcher
from perfcache.core.errors import (
    ClassificationAmbiguous,
    NoDataFound,
    StoreUnavailable,
    UpstreamError,
)
from perfcache.core.logging import get_logger
from perfcache.core.periods import (
    Classification,
    DateRange,
    PeriodKey,
    PeriodType,
    classify,
    ensure_single_period,
    split_by_month,
)
from perfcache.engine.coalescer import RequestCoalescer
from perfcache.engine.reconciler import reconcile, recompute, merge_summaries, sum_campaigns
from perfcache.engine.refresher import BackgroundRefresher
from perfcache.models.summary_models import (
    NormalizedCampaign,
    PeriodSummary,
    ResolvePart,
    ResolveResult,
    SourceUsed,
)
from perfcache.stores.archive import ArchiveStore
from perfcache.stores.day_ledger import DayLedgerStore
from perfcache.stores.hot_cache import HotPeriodCache, utcnow

logger = get_logger("engine.resolver")

ARCHIVE_SOURCE_BACKFILL = "live_backfill"
ARCHIVE_SOURCE_FORCED = "force_refresh"
LEDGER_SOURCE_LIVE = "resolver_live_fetch"


class TieredSourceResolver:
    def __init__(
        self,
        hot_cache: HotPeriodCache,
        archive: ArchiveStore,
        ledger: DayLedgerStore,
        fetcher: UpstreamFetcher,
        coalescer: Optional[RequestCoalescer] = None,
        refresher: Optional[BackgroundRefresher] = None,
        freshness_seconds: float = settings.freshness_seconds,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.hot_cache = hot_cache
        self.archive = archive
        self.ledger = ledger
        self.fetcher = fetcher
        self.coalescer = coalescer or RequestCoalescer(settings.coalesce_ceiling_seconds)
        self.refresher = refresher or BackgroundRefresher(
            settings.refresh_cooldown_seconds, enabled=settings.background_refresh_enabled
        )
        self.freshness_seconds = freshness_seconds
        self.clock = clock

    # ── Public API ──

    async def resolve(self, client_id: str, platform: str, rng: DateRange) -> ResolveResult:
        """Resolve metrics for the range, coalescing identical requests."""
        self.fetcher.adapter_for(platform)
        key = ("resolve", client_id, platform, rng.start, rng.end)
        return await self.coalescer.run(
            key, lambda: self._resolve_range(client_id, platform, rng)
        )

    async def force_refresh(
        self, client_id: str, platform: str, rng: DateRange
    ) -> ResolveResult:
        """Bypass the hot cache read: live fetch and write through."""
        self.fetcher.adapter_for(platform)
        key = ("force", client_id, platform, rng.start, rng.end)
        return await self.coalescer.run(
            key, lambda: self._force_refresh(client_id, platform, rng)
        )

    async def refresh_stale_entries(self) -> int:
        """Trigger background refreshes for every stale, still-current entry."""
        now = self.clock()
        triggered = 0
        for entry in self.hot_cache.entries():
            classification = classify(now, entry.range)
            if not classification.is_current:
                continue  # Closed: the lifecycle manager archives it
            if HotPeriodCache.is_fresh(entry, self.freshness_seconds, now):
                continue
            if self._schedule_refresh(entry.key, entry.range) is not None:
                triggered += 1
        logger.info(f"Proactive refresh triggered for {triggered} stale entries")
        return triggered

    # ── Range handling ──

    async def _resolve_range(
        self, client_id: str, platform: str, rng: DateRange
    ) -> ResolveResult:
        classification = classify(self.clock(), rng)
        try:
            ensure_single_period(classification)
        except ClassificationAmbiguous as e:
            logger.info(f"{e}", extra={"client_id": client_id, "platform": platform})
            return await self._resolve_split(client_id, platform, classification)
        return await self._resolve_classified(client_id, platform, classification)

    async def _resolve_split(
        self, client_id: str, platform: str, whole: Classification
    ) -> ResolveResult:
        now = self.clock()
        parts = [classify(now, part) for part in split_by_month(whole.range)]
        results: Sequence[ResolveResult] = await asyncio.gather(
            *(self._resolve_classified(client_id, platform, c) for c in parts)
        )

        succeeded = [r for r in results if r.success]
        failed = [r for r in results if not r.success]
        sources = {r.source_used for r in results}
        source = sources.pop() if len(sources) == 1 else results[-1].source_used

        reasons: List[str] = [
            f"{r.date_range_start}→{r.date_range_end}: {r.error or r.degradation_reason}"
            for r in results
            if r.degraded
        ]
        return self._result(
            whole,
            merge_summaries([r.summary for r in succeeded]),
            source if succeeded else SourceUsed.NONE,
            success=bool(succeeded),
            degraded=bool(reasons),
            reason="; ".join(reasons) or None,
            error=failed[0].error if failed and not succeeded else None,
            parts=[
                ResolvePart(
                    start=r.date_range_start,
                    end=r.date_range_end,
                    period_type=r.period_type,
                    period_id=r.period_id,
                    source_used=r.source_used,
                    success=r.success,
                )
                for r in results
            ],
        )

    async def _resolve_classified(
        self, client_id: str, platform: str, c: Classification
    ) -> ResolveResult:
        started = time.perf_counter()
        try:
            if c.is_current:
                result = await self._resolve_current(client_id, platform, c)
            else:
                result = await self._resolve_historical(client_id, platform, c)
        except NoDataFound as e:
            logger.warning(
                f"No data for {c.range}: {e.describe()}",
                extra={"client_id": client_id, "platform": platform, "period_id": c.period_id},
            )
            result = self._no_data(c, e)

        logger.info(
            f"Resolved {c.period_type.value} {c.period_id} from {result.source_used.value}",
            extra={
                "client_id": client_id,
                "platform": platform,
                "period_id": c.period_id,
                "source": result.source_used.value,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return result

    # ── Current periods ──

    async def _resolve_current(
        self, client_id: str, platform: str, c: Classification
    ) -> ResolveResult:
        key = c.key(client_id, platform)
        try:
            hot = self.hot_cache.read(key, self.freshness_seconds)
        except StoreUnavailable as e:
            logger.warning(f"Hot cache read failed, going live: {e}", extra={"period_id": c.period_id})
            hot = None

        if hot is not None:
            summary = recompute(hot.entry.summary)
            if not hot.is_stale:
                return self._result(
                    c, summary, SourceUsed.HOT_CACHE_FRESH, cache_age=hot.age_seconds
                )
            self._schedule_refresh(key, c.range)
            last_error = self.refresher.last_error(key)
            return self._result(
                c,
                summary,
                SourceUsed.HOT_CACHE_STALE,
                degraded=last_error is not None,
                reason=last_error,
                cache_age=hot.age_seconds,
            )

        campaigns = await self._fetch_or_no_data(client_id, platform, c)
        summary = reconcile(upstream_campaigns=campaigns).summary
        self._write_hot(key, c.range, summary)
        return self._result(c, summary, SourceUsed.LIVE_FETCH, cache_age=0.0)

    def _schedule_refresh(self, key: PeriodKey, rng: DateRange) -> Optional[asyncio.Task]:
        return self.refresher.trigger(key, lambda: self._refresh_hot(key, rng))

    async def _refresh_hot(self, key: PeriodKey, rng: DateRange) -> None:
        entry = self.hot_cache.get(key)
        if entry is not None and HotPeriodCache.is_fresh(
            entry, self.freshness_seconds, self.clock()
        ):
            logger.info(f"Entry {key} became fresh meanwhile, skipping refresh")
            return
        campaigns = await self.fetcher.fetch_range(
            key.client_id, key.platform, rng.start, rng.end
        )
        self.hot_cache.put(key, rng, reconcile(upstream_campaigns=campaigns).summary)

    # ── Historical periods ──

    async def _resolve_historical(
        self, client_id: str, platform: str, c: Classification
    ) -> ResolveResult:
        durable = self._from_durable(client_id, platform, c)
        if durable is not None:
            return durable

        campaigns = await self._fetch_or_no_data(client_id, platform, c)
        if not campaigns:
            raise NoDataFound(f"Upstream returned no campaigns for {c.range}")
        summary = reconcile(upstream_campaigns=campaigns).summary
        self._persist_closed(client_id, platform, c, summary, campaigns, ARCHIVE_SOURCE_BACKFILL)
        return self._result(c, summary, SourceUsed.LIVE_FETCH)

    def _from_durable(
        self, client_id: str, platform: str, c: Classification
    ) -> Optional[ResolveResult]:
        """Archive first, then the day ledger. ``None`` when both miss."""
        archived = None
        if c.period_type != PeriodType.CUSTOM:
            try:
                archived = self.archive.get(c.key(client_id, platform))
            except StoreUnavailable as e:
                logger.warning(f"Archive read failed, trying day ledger: {e}")

        rows = []
        needs_ledger = archived is None or not archived.summary.funnel.has_values()
        if needs_ledger:
            try:
                rows = self.ledger.days_in_range(client_id, platform, c.range)
            except StoreUnavailable as e:
                logger.warning(f"Day ledger read failed: {e}")

        if archived is not None and archived.summary.has_data():
            reconciled = reconcile(period_summary=archived.summary, day_records=rows)
            return self._result(c, reconciled.summary, SourceUsed.ARCHIVE)

        if rows:
            reconciled = reconcile(day_records=rows)
            return self._result(c, reconciled.summary, SourceUsed.DAY_LEDGER)
        return None

    # ── Force refresh ──

    async def _force_refresh(
        self, client_id: str, platform: str, rng: DateRange
    ) -> ResolveResult:
        c = classify(self.clock(), rng)
        try:
            campaigns = await self.fetcher.fetch_range(client_id, platform, rng.start, rng.end)
        except UpstreamError as e:
            logger.error(
                f"Forced refresh failed: {e}",
                extra={"client_id": client_id, "platform": platform, "period_id": c.period_id},
            )
            return self._degraded_fallback(client_id, platform, c, e)

        summary = reconcile(upstream_campaigns=campaigns).summary
        if c.is_current:
            self._write_hot(c.key(client_id, platform), rng, summary)
        else:
            self._persist_closed(client_id, platform, c, summary, campaigns, ARCHIVE_SOURCE_FORCED)
        return self._result(c, summary, SourceUsed.LIVE_FETCH, cache_age=0.0 if c.is_current else None)

    def _degraded_fallback(
        self, client_id: str, platform: str, c: Classification, cause: UpstreamError
    ) -> ResolveResult:
        """Serve whatever durable data exists after a failed live call."""
        reason = f"{type(cause).__name__}: {cause}"
        if c.is_current:
            try:
                entry = self.hot_cache.get(c.key(client_id, platform))
            except StoreUnavailable:
                entry = None
            if entry is not None:
                return self._result(
                    c,
                    recompute(entry.summary),
                    SourceUsed.HOT_CACHE_STALE,
                    degraded=True,
                    reason=reason,
                    cache_age=entry.age_seconds(self.clock()),
                )
        else:
            durable = self._from_durable(client_id, platform, c)
            if durable is not None:
                return durable.model_copy(update={"degraded": True, "degradation_reason": reason})
        return self._no_data(c, NoDataFound("Live refresh failed and nothing is stored", cause))

    # ── Write-through ──

    def _write_hot(self, key: PeriodKey, rng: DateRange, summary: PeriodSummary) -> None:
        try:
            self.hot_cache.put(key, rng, summary)
        except StoreUnavailable as e:
            logger.error(f"Hot cache write failed for {key}: {e}")

    def _persist_closed(
        self,
        client_id: str,
        platform: str,
        c: Classification,
        summary: PeriodSummary,
        campaigns: Sequence[NormalizedCampaign],
        data_source: str,
    ) -> None:
        """Archive whole closed periods; mirror closed single days into the ledger.

        A hot entry left over from while the period was current is dropped
        once the archive row is written, so archival never replays it.
        """
        if not c.archivable:
            return
        key = c.key(client_id, platform)
        try:
            self.archive.upsert(key, c.range, summary, data_source)
            if c.period_type in (PeriodType.MONTH, PeriodType.WEEK):
                if self.hot_cache.delete(key):
                    logger.info(f"Dropped superseded hot entry {key}")
            if c.period_type == PeriodType.DAY:
                counters, funnel = sum_campaigns(campaigns)
                self.ledger.upsert_day(
                    client_id, platform, c.range.start, counters, funnel, LEDGER_SOURCE_LIVE
                )
        except StoreUnavailable as e:
            logger.error(f"Write-through failed for {c.period_id}: {e}")

    # ── Helpers ──

    async def _fetch_or_no_data(
        self, client_id: str, platform: str, c: Classification
    ) -> List[NormalizedCampaign]:
        try:
            return await self.fetcher.fetch_range(client_id, platform, c.range.start, c.range.end)
        except UpstreamError as e:
            raise NoDataFound(f"Live fetch failed for {c.range}", cause=e) from e

    def _result(
        self,
        c: Classification,
        summary: PeriodSummary,
        source: SourceUsed,
        *,
        success: bool = True,
        degraded: bool = False,
        reason: Optional[str] = None,
        error: Optional[str] = None,
        cache_age: Optional[float] = None,
        parts: Sequence[ResolvePart] = (),
    ) -> ResolveResult:
        return ResolveResult(
            success=success,
            summary=summary,
            source_used=source,
            period_type=c.period_type.value,
            period_id=c.period_id,
            date_range_start=c.range.start,
            date_range_end=c.range.end,
            degraded=degraded,
            degradation_reason=reason,
            error=error,
            cache_age_seconds=cache_age,
            parts=list(parts),
        )

    def _no_data(self, c: Classification, e: NoDataFound) -> ResolveResult:
        return self._result(
            c,
            PeriodSummary(),
            SourceUsed.NONE,
            success=False,
            degraded=True,
            reason=NoDataFound.code,
            error=e.describe(),
        )
