import asyncio
from datetime import date

import pytest

from perfcache.core.errors import UnsupportedPlatform, UpstreamAuthInvalid, UpstreamUnavailable
from perfcache.core.periods import DateRange, PeriodKey, PeriodType
from perfcache.models.summary_models import Funnel, PeriodSummary, SourceUsed, Stats

from conftest import make_campaign

MARCH = DateRange(start=date(2024, 3, 1), end=date(2024, 3, 31))
FEBRUARY = DateRange(start=date(2024, 2, 1), end=date(2024, 2, 29))


def _key(period_type: PeriodType, period_id: str) -> PeriodKey:
    return PeriodKey(client_id="hotel-a", platform="meta", period_type=period_type, period_id=period_id)


# ── Current periods ──


@pytest.mark.asyncio
async def test_current_month_live_fetch_then_fresh_hit(metrics_engine, adapter):
    resolver = metrics_engine.resolver

    first = await resolver.resolve("hotel-a", "meta", MARCH)

    assert first.success
    assert first.source_used == SourceUsed.LIVE_FETCH
    assert first.summary.stats.ctr == 2.0
    assert first.summary.stats.cpc == 2.5
    assert first.summary.funnel.roas == 4.0
    assert len(adapter.calls) == 1
    assert metrics_engine.archive.count() == 0

    second = await resolver.resolve("hotel-a", "meta", MARCH)

    assert second.source_used == SourceUsed.HOT_CACHE_FRESH
    assert second.summary == first.summary
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_fifty_concurrent_requests_hit_upstream_once(metrics_engine, adapter):
    adapter.delay = 0.05

    results = await asyncio.gather(
        *(metrics_engine.resolver.resolve("hotel-a", "meta", MARCH) for _ in range(50))
    )

    assert len(adapter.calls) == 1
    assert len(results) == 50
    assert all(r.success for r in results)
    assert all(r.model_dump() == results[0].model_dump() for r in results)
    assert metrics_engine.hot_cache.count() == 1


@pytest.mark.asyncio
async def test_stale_entry_is_returned_without_waiting_for_refresh(metrics_engine, adapter, clock):
    resolver = metrics_engine.resolver
    await resolver.resolve("hotel-a", "meta", MARCH)
    clock.advance(hours=7)
    adapter.delay = 0.2
    adapter.campaigns = [make_campaign(spend=900.0, impressions=20000, clicks=300)]

    stale = await asyncio.wait_for(resolver.resolve("hotel-a", "meta", MARCH), timeout=0.1)

    assert stale.source_used == SourceUsed.HOT_CACHE_STALE
    assert stale.summary.stats.spend == 500.0
    assert stale.degraded is False
    assert metrics_engine.refresher.pending == 1

    await metrics_engine.refresher.drain()
    refreshed = await resolver.resolve("hotel-a", "meta", MARCH)
    assert refreshed.source_used == SourceUsed.HOT_CACHE_FRESH
    assert refreshed.summary.stats.spend == 900.0
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_upstream_outage_serves_stale_with_degradation_flag(metrics_engine, adapter, clock):
    resolver = metrics_engine.resolver
    await resolver.resolve("hotel-a", "meta", MARCH)
    clock.advance(hours=7)
    adapter.error = UpstreamUnavailable("rate limited")

    await resolver.resolve("hotel-a", "meta", MARCH)
    await metrics_engine.refresher.drain()
    result = await resolver.resolve("hotel-a", "meta", MARCH)

    assert result.success
    assert result.source_used == SourceUsed.HOT_CACHE_STALE
    assert result.degraded is True
    assert "rate limited" in result.degradation_reason
    assert result.summary.stats.spend == 500.0
    # Cooldown holds: no second background call during the outage
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_current_miss_with_upstream_failure_is_explicit_no_data(metrics_engine, adapter):
    adapter.error = UpstreamAuthInvalid("token expired")

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)

    assert result.success is False
    assert result.source_used == SourceUsed.NONE
    assert result.summary.has_data() is False
    assert "UpstreamAuthInvalid" in result.error
    assert metrics_engine.hot_cache.count() == 0


# ── Historical periods ──


@pytest.mark.asyncio
async def test_archive_summary_wins_over_ledger_rows(metrics_engine, adapter):
    metrics_engine.archive.upsert(
        _key(PeriodType.MONTH, "2024-02"),
        FEBRUARY,
        PeriodSummary(stats=Stats(spend=100.0, clicks=25, cpc=7.77), funnel=Funnel(reservations=10)),
        "test",
    )
    for day in (date(2024, 2, 1), date(2024, 2, 2)):
        metrics_engine.ledger.upsert_day(
            "hotel-a", "meta", day,
            make_campaign().stats, make_campaign(reservations=3).funnel,
        )

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", FEBRUARY)

    assert result.source_used == SourceUsed.ARCHIVE
    assert result.summary.funnel.reservations == 10
    assert result.summary.stats.cpc == 4.0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_ledger_answers_when_archive_misses(metrics_engine, adapter):
    metrics_engine.ledger.upsert_day(
        "hotel-a", "meta", date(2024, 2, 10),
        make_campaign(spend=30.0, clicks=10, impressions=500).stats,
        make_campaign(reservations=1, reservation_value=90.0).funnel,
    )

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", FEBRUARY)

    assert result.source_used == SourceUsed.DAY_LEDGER
    assert result.summary.stats.spend == 30.0
    assert result.summary.funnel.roas == 3.0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_historical_gap_is_backfilled_into_archive(metrics_engine, adapter):
    resolver = metrics_engine.resolver

    first = await resolver.resolve("hotel-a", "meta", FEBRUARY)
    second = await resolver.resolve("hotel-a", "meta", FEBRUARY)

    assert first.source_used == SourceUsed.LIVE_FETCH
    assert second.source_used == SourceUsed.ARCHIVE
    assert second.summary.stats == first.summary.stats
    assert len(adapter.calls) == 1
    assert metrics_engine.hot_cache.count() == 0


@pytest.mark.asyncio
async def test_failed_backfill_is_not_cached(metrics_engine, adapter):
    adapter.error = UpstreamUnavailable("connection reset")

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", FEBRUARY)

    assert result.success is False
    assert result.source_used == SourceUsed.NONE
    assert result.degraded is True
    assert "connection reset" in result.error
    assert metrics_engine.archive.count() == 0


@pytest.mark.asyncio
async def test_custom_range_is_not_archived(metrics_engine, adapter):
    rng = DateRange(start=date(2024, 2, 5), end=date(2024, 2, 20))

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", rng)

    assert result.source_used == SourceUsed.LIVE_FETCH
    assert result.period_type == "custom"
    assert metrics_engine.archive.count() == 0


@pytest.mark.asyncio
async def test_closed_single_day_is_written_to_ledger(metrics_engine, adapter):
    day = DateRange(start=date(2024, 3, 14), end=date(2024, 3, 14))

    await metrics_engine.resolver.resolve("hotel-a", "meta", day)

    rows = metrics_engine.ledger.days_in_range("hotel-a", "meta", day)
    assert len(rows) == 1
    assert rows[0].spend == 500.0
    assert metrics_engine.archive.count(PeriodType.DAY) == 1


@pytest.mark.asyncio
async def test_cross_month_range_is_split_and_summed(metrics_engine, adapter):
    metrics_engine.ledger.upsert_day(
        "hotel-a", "meta", date(2024, 1, 30),
        make_campaign(spend=10.0, clicks=5).stats, make_campaign().funnel,
    )
    rng = DateRange(start=date(2024, 1, 29), end=date(2024, 2, 29))

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", rng)

    assert result.success
    assert [p.source_used for p in result.parts] == [SourceUsed.DAY_LEDGER, SourceUsed.LIVE_FETCH]
    assert result.source_used == SourceUsed.LIVE_FETCH
    assert result.summary.stats.spend == 510.0
    assert result.period_type == "custom"


# ── Force refresh & misc ──


@pytest.mark.asyncio
async def test_force_refresh_bypasses_fresh_cache(metrics_engine, adapter):
    resolver = metrics_engine.resolver
    await resolver.resolve("hotel-a", "meta", MARCH)
    adapter.campaigns = [make_campaign(spend=750.0, clicks=300, impressions=15000)]

    forced = await resolver.force_refresh("hotel-a", "meta", MARCH)
    after = await resolver.resolve("hotel-a", "meta", MARCH)

    assert forced.source_used == SourceUsed.LIVE_FETCH
    assert after.source_used == SourceUsed.HOT_CACHE_FRESH
    assert after.summary.stats.spend == 750.0
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_force_refresh_failure_falls_back_to_cached_entry(metrics_engine, adapter):
    resolver = metrics_engine.resolver
    await resolver.resolve("hotel-a", "meta", MARCH)
    adapter.error = UpstreamUnavailable("503")

    result = await resolver.force_refresh("hotel-a", "meta", MARCH)

    assert result.success
    assert result.degraded
    assert result.source_used == SourceUsed.HOT_CACHE_STALE
    assert result.summary.stats.spend == 500.0


@pytest.mark.asyncio
async def test_malformed_upstream_body_is_treated_as_outage(metrics_engine, adapter):
    resolver = metrics_engine.resolver
    await resolver.resolve("hotel-a", "meta", MARCH)
    adapter.error = ValueError("Expecting value: line 1 column 1 (char 0)")

    result = await resolver.force_refresh("hotel-a", "meta", MARCH)

    assert result.success
    assert result.degraded
    assert result.source_used == SourceUsed.HOT_CACHE_STALE
    assert "ValueError" in result.degradation_reason
    assert len(metrics_engine.coalescer) == 0


@pytest.mark.asyncio
async def test_unexpected_adapter_error_on_miss_is_explicit_no_data(metrics_engine, adapter):
    adapter.error = KeyError("results")

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)

    assert result.success is False
    assert result.source_used == SourceUsed.NONE
    assert "UpstreamUnavailable" in result.error


@pytest.mark.asyncio
async def test_hung_upstream_times_out_into_no_data(metrics_engine, adapter):
    adapter.delay = 1.0
    metrics_engine.fetcher.timeout_seconds = 0.05

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)

    assert result.success is False
    assert "timed out" in result.error
    assert len(metrics_engine.coalescer) == 0


@pytest.mark.asyncio
async def test_unknown_platform_is_rejected(metrics_engine):
    with pytest.raises(UnsupportedPlatform):
        await metrics_engine.resolver.resolve("hotel-a", "tiktok", MARCH)


@pytest.mark.asyncio
async def test_proactive_refresh_targets_only_stale_current_entries(metrics_engine, adapter, clock):
    resolver = metrics_engine.resolver
    await resolver.resolve("hotel-a", "meta", MARCH)
    assert await resolver.refresh_stale_entries() == 0

    clock.advance(hours=7)
    assert await resolver.refresh_stale_entries() == 1
    await metrics_engine.refresher.drain()
    assert len(adapter.calls) == 2
