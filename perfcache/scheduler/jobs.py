"""PERFCACHE — Scheduler Jobs.

APScheduler cron jobs driving the lifecycle: period archival, retention
pruning, day-ledger collection, proactive hot-cache refresh and in-memory
map sweeps.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from perfcache.config import settings
from perfcache.core.logging import get_logger
from perfcache.core.periods import PeriodType
from perfcache.engine.service import MetricsEngine

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler(timezone="UTC")


async def monthly_archival_job(engine: MetricsEngine):
    """Archive last month's hot entries on the 1st."""
    try:
        report = engine.lifecycle.run_monthly_archival()
        logger.info(f"Scheduled monthly archival: {report.archived} archived, {report.errors} errors")
    except Exception as e:
        logger.error(f"Scheduled monthly archival failed: {e}")


async def weekly_archival_job(engine: MetricsEngine):
    """Archive last week's hot entries on Mondays."""
    try:
        report = engine.lifecycle.run_weekly_archival()
        logger.info(f"Scheduled weekly archival: {report.archived} archived, {report.errors} errors")
    except Exception as e:
        logger.error(f"Scheduled weekly archival failed: {e}")


async def retention_job(engine: MetricsEngine):
    for period_type in (PeriodType.MONTH, PeriodType.WEEK, PeriodType.DAY):
        try:
            engine.lifecycle.prune_retention(period_type=period_type)
        except Exception as e:
            logger.error(f"Retention prune failed for {period_type.value}: {e}")


async def daily_collection_job(engine: MetricsEngine):
    """Write yesterday's rows into the day ledger."""
    try:
        await engine.collector.collect_yesterday()
    except Exception as e:
        logger.error(f"Scheduled daily collection failed: {e}")


async def proactive_refresh_job(engine: MetricsEngine):
    try:
        await engine.resolver.refresh_stale_entries()
    except Exception as e:
        logger.error(f"Proactive refresh failed: {e}")


async def sweep_job(engine: MetricsEngine):
    dropped = engine.sweep()
    if dropped:
        logger.info(f"Swept {dropped} expired in-memory entries")


def start_scheduler(engine: MetricsEngine):
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    common = {"args": [engine], "replace_existing": True, "misfire_grace_time": 3600}
    scheduler.add_job(
        monthly_archival_job, "cron", day=1, hour=0, minute=15, id="monthly_archival", **common
    )
    scheduler.add_job(
        weekly_archival_job, "cron", day_of_week="mon", hour=0, minute=30, id="weekly_archival", **common
    )
    scheduler.add_job(
        retention_job, "cron", day=1, hour=2, minute=0, id="retention_prune", **common
    )
    scheduler.add_job(
        daily_collection_job,
        "cron",
        hour=settings.collection_hour,
        minute=0,
        id="daily_collection",
        **common,
    )
    if settings.proactive_refresh_enabled:
        scheduler.add_job(
            proactive_refresh_job,
            "interval",
            hours=settings.proactive_refresh_hours,
            id="proactive_refresh",
            **common,
        )
    scheduler.add_job(sweep_job, "interval", minutes=5, id="inflight_sweep", **common)

    scheduler.start()
    logger.info(
        f"Scheduler started. Daily collection at {settings.collection_hour}:00 UTC, "
        f"archival on the 1st and Mondays"
    )


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
