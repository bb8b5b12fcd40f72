"""PERFCACHE — Period Summary Models (Versioned).

``PeriodSummary`` is the one shape stored in the hot cache and the archive
and returned to every caller. It is a closed record: platform-specific
metric names never reach it.
"""

from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from perfcache.core.metric_registry import BASE_COUNTER_NAMES, FUNNEL_COUNTER_NAMES

SUMMARY_SCHEMA_VERSION = "1"


# ─────────────────────────────────────────────
# COUNTERS
# ─────────────────────────────────────────────


class Counters(BaseModel):
    """Raw additive delivery counters."""

    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    reach: int = 0

    def has_values(self) -> bool:
        return any(getattr(self, name) for name in BASE_COUNTER_NAMES)


class FunnelCounts(BaseModel):
    """Raw additive funnel-stage counters."""

    click_to_call: int = 0
    email_contacts: int = 0
    booking_step_1: int = 0
    booking_step_2: int = 0
    booking_step_3: int = 0
    reservations: int = 0
    reservation_value: float = 0.0

    def has_values(self) -> bool:
        return any(getattr(self, name) for name in FUNNEL_COUNTER_NAMES)


class Stats(Counters):
    """Counters plus derived delivery rates."""

    ctr: float = 0.0  # percent
    cpc: float = 0.0


class Funnel(FunnelCounts):
    """Funnel counters plus derived return metrics."""

    roas: float = 0.0
    cost_per_conversion: float = 0.0


class NormalizedCampaign(BaseModel):
    """One campaign's metrics for a period, in the canonical vocabulary."""

    campaign_id: str
    campaign_name: str = ""
    status: str = ""
    stats: Counters = Counters()
    funnel: FunnelCounts = FunnelCounts()


class PeriodSummary(BaseModel):
    """Canonical aggregated result for one (client, platform, range)."""

    schema_version: str = SUMMARY_SCHEMA_VERSION
    stats: Stats = Stats()
    funnel: Funnel = Funnel()
    campaigns: List[NormalizedCampaign] = []

    def has_data(self) -> bool:
        """At least one non-zero metric or at least one campaign."""
        return bool(self.campaigns) or self.stats.has_values() or self.funnel.has_values()


# ─────────────────────────────────────────────
# RESOLUTION OUTPUT
# ─────────────────────────────────────────────


class SourceUsed(str, Enum):
    """Which tier produced the returned summary."""

    HOT_CACHE_FRESH = "hot-cache-fresh"
    HOT_CACHE_STALE = "hot-cache-stale"
    ARCHIVE = "archive"
    DAY_LEDGER = "day-ledger"
    LIVE_FETCH = "live-fetch"
    NONE = "none"


class ResolvePart(BaseModel):
    """Per-sub-range outcome when a range was split per month."""

    start: date
    end: date
    period_type: str
    period_id: str
    source_used: SourceUsed
    success: bool = True


class ResolveResult(BaseModel):
    """Response of ``resolve`` / ``force_refresh``."""

    success: bool
    summary: PeriodSummary = PeriodSummary()
    source_used: SourceUsed = SourceUsed.NONE
    period_type: str
    period_id: str = ""
    date_range_start: date
    date_range_end: date
    degraded: bool = False
    degradation_reason: Optional[str] = None
    error: Optional[str] = None
    cache_age_seconds: Optional[float] = None
    parts: List[ResolvePart] = []
