"""PERFCACHE — Archival Lifecycle Manager.

Scheduled, idempotent housekeeping:

1. Archival: hot-cache entries whose period is no longer current are
   copied into the archive (upsert) and, only after that write succeeds,
   removed from the hot cache. A failure on one entry is counted and the
   run moves on; the entry stays hot and is picked up by the next run.
2. Retention: archive entries older than a horizon of whole periods are
   deleted. The horizon never drops below what a year-over-year comparison
   needs.
"""

from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from perfcache.config import settings
from perfcache.core.errors import StoreUnavailable
from perfcache.core.logging import get_logger
from perfcache.core.periods import PeriodType, classify, retention_cutoff
from perfcache.engine.reconciler import recompute
from perfcache.stores.archive import ArchiveStore
from perfcache.stores.hot_cache import HotPeriodCache, utcnow

logger = get_logger("engine.lifecycle")

ARCHIVE_SOURCE_TRANSITION = "period_transition_archive"

# Including the current period: current + the same period one year back
MIN_RETENTION_PERIODS: Dict[PeriodType, int] = {
    PeriodType.MONTH: 13,
    PeriodType.WEEK: 53,
    PeriodType.DAY: 366,
}


def default_horizon(period_type: PeriodType) -> int:
    return {
        PeriodType.MONTH: settings.retention_months,
        PeriodType.WEEK: settings.retention_weeks,
        PeriodType.DAY: settings.retention_days,
    }[period_type]


class ArchivalReport(BaseModel):
    period_type: str
    examined: int = 0
    archived: int = 0
    skipped_current: int = 0
    errors: int = 0
    archived_periods: List[str] = []


class PruneReport(BaseModel):
    period_type: str
    horizon_periods: int
    cutoff: date
    deleted: int = 0


class PeriodTypeStatus(BaseModel):
    hot_entries: int = 0
    archive_entries: int = 0
    oldest_archived: Optional[date] = None
    newest_archived: Optional[date] = None


class LifecycleStatus(BaseModel):
    generated_at: datetime
    hot_entries: int = 0
    archive_entries: int = 0
    by_period_type: Dict[str, PeriodTypeStatus] = {}


class ArchivalLifecycleManager:
    def __init__(
        self,
        hot_cache: HotPeriodCache,
        archive: ArchiveStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.hot_cache = hot_cache
        self.archive = archive
        self.clock = clock

    def run_monthly_archival(self) -> ArchivalReport:
        return self._archive_closed(PeriodType.MONTH)

    def run_weekly_archival(self) -> ArchivalReport:
        return self._archive_closed(PeriodType.WEEK)

    def _archive_closed(self, period_type: PeriodType) -> ArchivalReport:
        now = self.clock()
        report = ArchivalReport(period_type=period_type.value)

        for entry in self.hot_cache.entries(period_type):
            report.examined += 1
            if classify(now, entry.range).is_current:
                report.skipped_current += 1
                continue

            try:
                self.archive.upsert(
                    entry.key, entry.range, recompute(entry.summary), ARCHIVE_SOURCE_TRANSITION
                )
            except StoreUnavailable as e:
                report.errors += 1
                logger.error(
                    f"Archive write failed, keeping hot entry: {e}",
                    extra={"client_id": entry.key.client_id, "period_id": entry.key.period_id},
                )
                continue

            try:
                self.hot_cache.delete(entry.key)
            except StoreUnavailable as e:
                # Archived already; the next run re-upserts the same summary and retries the delete
                report.errors += 1
                logger.error(f"Hot entry delete failed after archiving {entry.key}: {e}")
                continue

            report.archived += 1
            report.archived_periods.append(str(entry.key))
            logger.info(
                f"Archived {period_type.value} {entry.key.period_id}",
                extra={
                    "client_id": entry.key.client_id,
                    "platform": entry.key.platform,
                    "period_id": entry.key.period_id,
                },
            )

        logger.info(
            f"{period_type.value.capitalize()} archival complete: "
            f"{report.archived} archived, {report.skipped_current} current, {report.errors} errors"
        )
        return report

    def prune_retention(
        self,
        horizon_periods: Optional[int] = None,
        period_type: PeriodType = PeriodType.MONTH,
    ) -> PruneReport:
        """Delete archive entries outside the trailing ``horizon_periods``.

        The horizon counts whole periods including the current one and is
        raised to the year-over-year minimum when smaller.
        """
        horizon = horizon_periods if horizon_periods is not None else default_horizon(period_type)
        minimum = MIN_RETENTION_PERIODS.get(period_type)
        if minimum is None:
            raise ValueError(f"Retention is not defined for {period_type.value} periods")
        if horizon < minimum:
            logger.warning(
                f"Retention horizon {horizon} {period_type.value}s is below the "
                f"year-over-year minimum, using {minimum}"
            )
            horizon = minimum

        cutoff = retention_cutoff(period_type, self.clock(), horizon - 1)
        deleted = self.archive.delete_older_than(period_type, cutoff)
        logger.info(f"Pruned {deleted} {period_type.value} archive entries before {cutoff}")
        return PruneReport(
            period_type=period_type.value,
            horizon_periods=horizon,
            cutoff=cutoff,
            deleted=deleted,
        )

    def get_lifecycle_status(self) -> LifecycleStatus:
        status = LifecycleStatus(generated_at=self.clock())
        for period_type in (PeriodType.MONTH, PeriodType.WEEK, PeriodType.DAY):
            archived = self.archive.entries(period_type)
            type_status = PeriodTypeStatus(
                hot_entries=self.hot_cache.count(period_type),
                archive_entries=len(archived),
                oldest_archived=archived[0].range.start if archived else None,
                newest_archived=archived[-1].range.start if archived else None,
            )
            status.by_period_type[period_type.value] = type_status
            status.hot_entries += type_status.hot_entries
            status.archive_entries += type_status.archive_entries
        return status
