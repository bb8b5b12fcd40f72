"""PERFCACHE — Durable Store Tables.

Three tables back the engine:

- ``day_metrics``: the Day-Ledger, one row per (client, platform, date).
- ``period_archive``: closed-period summaries, one row per period key.
- ``hot_period_cache``: current-period summaries with a refresh timestamp.

Unique constraints on the natural keys make every write an idempotent
upsert, so concurrent duplicate writes converge instead of duplicating.
"""

from datetime import date, datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel, UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DayMetricRecord(SQLModel, table=True):
    """Granular daily counters; source of truth for range aggregation."""

    __tablename__ = "day_metrics"
    __table_args__ = (
        UniqueConstraint("client_id", "platform", "day", name="uq_day_metric"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True)
    platform: str = Field(index=True, description="meta | google")
    day: date = Field(index=True)

    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    reach: int = 0

    click_to_call: int = 0
    email_contacts: int = 0
    booking_step_1: int = 0
    booking_step_2: int = 0
    booking_step_3: int = 0
    reservations: int = 0
    reservation_value: float = 0.0

    data_source: str = Field(default="", description="Collector that wrote the row")
    updated_at: datetime = Field(default_factory=_utcnow)


class ArchiveEntry(SQLModel, table=True):
    """Summary of a closed period. Overwritten only by re-archival."""

    __tablename__ = "period_archive"
    __table_args__ = (
        UniqueConstraint(
            "client_id", "platform", "period_type", "period_id", name="uq_period_archive"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True)
    platform: str = Field(index=True)
    period_type: str = Field(index=True, description="day | week | month")
    period_id: str = Field(index=True, description="2024-03 | 2024-W09 | 2024-03-01")
    period_start: date = Field(index=True)
    period_end: date
    summary_json: str = Field(description="PeriodSummary as JSON")
    data_source: str = Field(default="", description="What produced the archive row")
    archived_at: datetime = Field(default_factory=_utcnow)


class HotCacheEntry(SQLModel, table=True):
    """Current-period summary, refreshed in place."""

    __tablename__ = "hot_period_cache"
    __table_args__ = (
        UniqueConstraint(
            "client_id", "platform", "period_type", "period_id", name="uq_hot_period_cache"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True)
    platform: str = Field(index=True)
    period_type: str = Field(index=True, description="week | month")
    period_id: str = Field(index=True)
    period_start: date
    period_end: date
    summary_json: str = Field(description="PeriodSummary as JSON")
    last_refreshed_at: datetime = Field(default_factory=_utcnow)
