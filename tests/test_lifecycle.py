from datetime import date, datetime, timezone

import pytest

from perfcache.core.errors import StoreUnavailable
from perfcache.core.periods import DateRange, PeriodKey, PeriodType, month_range
from perfcache.engine.lifecycle import ARCHIVE_SOURCE_TRANSITION
from perfcache.models.summary_models import PeriodSummary, SourceUsed, Stats

from conftest import make_campaign

MARCH = DateRange(start=date(2024, 3, 1), end=date(2024, 3, 31))
WEEK_11 = DateRange(start=date(2024, 3, 11), end=date(2024, 3, 17))


def _key(period_type: PeriodType, period_id: str, client_id: str = "hotel-a") -> PeriodKey:
    return PeriodKey(client_id=client_id, platform="meta", period_type=period_type, period_id=period_id)


async def _fill_march(metrics_engine):
    await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)
    await metrics_engine.resolver.resolve("hotel-a", "meta", WEEK_11)


@pytest.mark.asyncio
async def test_monthly_archival_is_idempotent(metrics_engine, adapter, clock):
    await _fill_march(metrics_engine)
    clock.now = datetime(2024, 4, 1, 0, 15, tzinfo=timezone.utc)
    lifecycle = metrics_engine.lifecycle

    first = lifecycle.run_monthly_archival()
    archived_once = metrics_engine.archive.get(_key(PeriodType.MONTH, "2024-03"))
    second = lifecycle.run_monthly_archival()
    archived_twice = metrics_engine.archive.get(_key(PeriodType.MONTH, "2024-03"))

    assert first.archived == 1 and first.errors == 0
    assert second.archived == 0 and second.examined == 0
    assert metrics_engine.archive.count(PeriodType.MONTH) == 1
    assert archived_once.summary == archived_twice.summary
    assert archived_once.data_source == ARCHIVE_SOURCE_TRANSITION
    assert metrics_engine.hot_cache.get(_key(PeriodType.MONTH, "2024-03")) is None
    # The weekly entry is left for the weekly job
    assert metrics_engine.hot_cache.count(PeriodType.WEEK) == 1


@pytest.mark.asyncio
async def test_archived_month_is_served_from_archive(metrics_engine, adapter, clock):
    await _fill_march(metrics_engine)
    clock.now = datetime(2024, 4, 2, tzinfo=timezone.utc)
    metrics_engine.lifecycle.run_monthly_archival()

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)

    assert result.source_used == SourceUsed.ARCHIVE
    assert result.summary.funnel.roas == 4.0
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_current_entries_are_not_archived(metrics_engine, clock):
    await _fill_march(metrics_engine)
    clock.now = datetime(2024, 3, 20, tzinfo=timezone.utc)

    report = metrics_engine.lifecycle.run_monthly_archival()

    assert report.archived == 0
    assert report.skipped_current == 1
    assert metrics_engine.hot_cache.count(PeriodType.MONTH) == 1


@pytest.mark.asyncio
async def test_weekly_archival_moves_closed_week(metrics_engine, clock):
    await _fill_march(metrics_engine)
    clock.now = datetime(2024, 3, 18, 0, 30, tzinfo=timezone.utc)

    report = metrics_engine.lifecycle.run_weekly_archival()

    assert report.archived == 1
    assert report.archived_periods == ["hotel-a:meta:week:2024-W11"]
    assert metrics_engine.archive.get(_key(PeriodType.WEEK, "2024-W11")) is not None
    assert metrics_engine.hot_cache.count(PeriodType.WEEK) == 0


@pytest.mark.asyncio
async def test_failed_archive_write_keeps_hot_entry(metrics_engine, clock, monkeypatch):
    await _fill_march(metrics_engine)
    clock.now = datetime(2024, 4, 1, tzinfo=timezone.utc)

    def broken_upsert(*args, **kwargs):
        raise StoreUnavailable("OperationalError: database is locked")

    monkeypatch.setattr(metrics_engine.archive, "upsert", broken_upsert)
    report = metrics_engine.lifecycle.run_monthly_archival()

    assert report.errors == 1
    assert report.archived == 0
    assert metrics_engine.hot_cache.count(PeriodType.MONTH) == 1


@pytest.mark.asyncio
async def test_forced_refresh_after_close_survives_archival(metrics_engine, adapter, clock):
    await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)
    clock.now = datetime(2024, 4, 1, 0, 5, tzinfo=timezone.utc)
    adapter.campaigns = [make_campaign(spend=900.0, impressions=10000, clicks=300)]

    forced = await metrics_engine.resolver.force_refresh("hotel-a", "meta", MARCH)

    assert forced.summary.stats.spend == 900.0
    assert metrics_engine.hot_cache.get(_key(PeriodType.MONTH, "2024-03")) is None

    report = metrics_engine.lifecycle.run_monthly_archival()
    after = await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)

    assert report.examined == 0
    assert after.source_used == SourceUsed.ARCHIVE
    assert after.summary.stats.spend == 900.0
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_backfill_of_closed_month_drops_leftover_hot_entry(metrics_engine, adapter, clock):
    await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)
    clock.now = datetime(2024, 4, 1, 0, 5, tzinfo=timezone.utc)

    result = await metrics_engine.resolver.resolve("hotel-a", "meta", MARCH)

    assert result.source_used == SourceUsed.LIVE_FETCH
    assert metrics_engine.archive.get(_key(PeriodType.MONTH, "2024-03")) is not None
    assert metrics_engine.hot_cache.count(PeriodType.MONTH) == 0


def _archive_months(metrics_engine, months):
    for year, month in months:
        metrics_engine.archive.upsert(
            _key(PeriodType.MONTH, f"{year}-{month:02d}"),
            month_range(year, month),
            PeriodSummary(stats=Stats(spend=1.0)),
            "test",
        )


def test_prune_keeps_year_over_year_window(metrics_engine):
    _archive_months(metrics_engine, [(2022, 12), (2023, 2), (2023, 3), (2023, 9), (2024, 2)])

    report = metrics_engine.lifecycle.prune_retention(14)

    # Mid-March 2024, 14 months including the current one: Feb 2023 onwards
    assert report.cutoff == date(2023, 2, 1)
    assert report.deleted == 1
    remaining = [e.key.period_id for e in metrics_engine.archive.entries(PeriodType.MONTH)]
    assert remaining == ["2023-02", "2023-03", "2023-09", "2024-02"]


def test_prune_raises_small_horizon_to_minimum(metrics_engine):
    _archive_months(metrics_engine, [(2023, 2), (2023, 3), (2024, 1)])

    report = metrics_engine.lifecycle.prune_retention(3)

    assert report.horizon_periods == 13
    assert report.cutoff == date(2023, 3, 1)
    remaining = [e.key.period_id for e in metrics_engine.archive.entries(PeriodType.MONTH)]
    assert remaining == ["2023-03", "2024-01"]


def test_prune_is_safe_to_rerun(metrics_engine):
    _archive_months(metrics_engine, [(2021, 1), (2024, 1)])

    assert metrics_engine.lifecycle.prune_retention().deleted == 1
    assert metrics_engine.lifecycle.prune_retention().deleted == 0


def test_prune_rejects_custom_periods(metrics_engine):
    with pytest.raises(ValueError):
        metrics_engine.lifecycle.prune_retention(20, PeriodType.CUSTOM)


@pytest.mark.asyncio
async def test_lifecycle_status_counts_tiers(metrics_engine, clock):
    await _fill_march(metrics_engine)
    _archive_months(metrics_engine, [(2023, 11), (2024, 1)])

    status = metrics_engine.lifecycle.get_lifecycle_status()

    assert status.hot_entries == 2
    assert status.archive_entries == 2
    month = status.by_period_type["month"]
    assert month.oldest_archived == date(2023, 11, 1)
    assert month.newest_archived == date(2024, 1, 1)
    assert status.by_period_type["week"].hot_entries == 1
