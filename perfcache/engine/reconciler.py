"""PERFCACHE — Metric Reconciler.

Turns one or more partially-overlapping metric sources for the same period
into a single ``PeriodSummary``:

- Stats come from exactly one source: a period-level summary with non-zero
  counters, else the summed Day-Ledger rows, else the upstream campaigns.
- Funnel counters are chosen the same way, independently: summary if any
  stage is non-zero, else ledger if non-zero, else upstream campaigns.
  Sources are never added together, so a conversion seen by two sources
  is counted once.
- CTR, CPC, ROAS and cost per conversion are recomputed from the chosen
  base counters every time. Stored derived values are ignored.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from perfcache.core.metric_registry import BASE_COUNTER_NAMES, FUNNEL_COUNTER_NAMES
from perfcache.models.store_models import DayMetricRecord
from perfcache.models.summary_models import (
    Counters,
    Funnel,
    FunnelCounts,
    NormalizedCampaign,
    PeriodSummary,
    Stats,
)

SOURCE_SUMMARY = "period-summary"
SOURCE_LEDGER = "day-ledger"
SOURCE_UPSTREAM = "upstream"
SOURCE_EMPTY = "empty"


class Reconciliation(BaseModel):
    """Reconciled summary plus which source won each metric family."""

    summary: PeriodSummary
    stats_source: str
    funnel_source: str


# ─────────────────────────────────────────────
# AGGREGATION
# ─────────────────────────────────────────────


def _counters_from(values: Dict[str, float]) -> Counters:
    return Counters(
        spend=round(values.get("spend", 0.0), 2),
        impressions=int(values.get("impressions", 0)),
        clicks=int(values.get("clicks", 0)),
        conversions=int(values.get("conversions", 0)),
        reach=int(values.get("reach", 0)),
    )


def _funnel_from(values: Dict[str, float]) -> FunnelCounts:
    return FunnelCounts(
        click_to_call=int(values.get("click_to_call", 0)),
        email_contacts=int(values.get("email_contacts", 0)),
        booking_step_1=int(values.get("booking_step_1", 0)),
        booking_step_2=int(values.get("booking_step_2", 0)),
        booking_step_3=int(values.get("booking_step_3", 0)),
        reservations=int(values.get("reservations", 0)),
        reservation_value=round(values.get("reservation_value", 0.0), 2),
    )


def sum_day_records(rows: Iterable[DayMetricRecord]) -> Tuple[Counters, FunnelCounts]:
    """Sum ledger rows across a range (days are disjoint, so this is safe)."""
    sums: Dict[str, float] = defaultdict(float)
    for row in rows:
        for name in BASE_COUNTER_NAMES + FUNNEL_COUNTER_NAMES:
            sums[name] += getattr(row, name) or 0
    return _counters_from(sums), _funnel_from(sums)


def sum_campaigns(
    campaigns: Iterable[NormalizedCampaign],
) -> Tuple[Counters, FunnelCounts]:
    sums: Dict[str, float] = defaultdict(float)
    for campaign in campaigns:
        for name in BASE_COUNTER_NAMES:
            sums[name] += getattr(campaign.stats, name)
        for name in FUNNEL_COUNTER_NAMES:
            sums[name] += getattr(campaign.funnel, name)
    return _counters_from(sums), _funnel_from(sums)


# ─────────────────────────────────────────────
# DERIVED METRICS
# ─────────────────────────────────────────────


def derive_stats(counters: Counters) -> Stats:
    ctr = (counters.clicks / counters.impressions * 100) if counters.impressions > 0 else 0.0
    cpc = (counters.spend / counters.clicks) if counters.clicks > 0 else 0.0
    return Stats(**counters.model_dump(), ctr=round(ctr, 4), cpc=round(cpc, 4))


def derive_funnel(funnel: FunnelCounts, spend: float) -> Funnel:
    roas = (funnel.reservation_value / spend) if spend > 0 else 0.0
    cost_per_conversion = (spend / funnel.reservations) if funnel.reservations > 0 else 0.0
    return Funnel(
        **funnel.model_dump(),
        roas=round(roas, 4),
        cost_per_conversion=round(cost_per_conversion, 4),
    )


def build_summary(
    counters: Counters,
    funnel: FunnelCounts,
    campaigns: Sequence[NormalizedCampaign] = (),
) -> PeriodSummary:
    return PeriodSummary(
        stats=derive_stats(counters),
        funnel=derive_funnel(funnel, counters.spend),
        campaigns=list(campaigns),
    )


def _base_counters(stats: Stats) -> Counters:
    return Counters(**{name: getattr(stats, name) for name in BASE_COUNTER_NAMES})


def _base_funnel(funnel: Funnel) -> FunnelCounts:
    return FunnelCounts(**{name: getattr(funnel, name) for name in FUNNEL_COUNTER_NAMES})


def recompute(summary: PeriodSummary) -> PeriodSummary:
    """Drop stored derived values and recompute them from base counters."""
    return build_summary(
        _base_counters(summary.stats), _base_funnel(summary.funnel), summary.campaigns
    )


# ─────────────────────────────────────────────
# RECONCILIATION
# ─────────────────────────────────────────────


def reconcile(
    period_summary: Optional[PeriodSummary] = None,
    day_records: Sequence[DayMetricRecord] = (),
    upstream_campaigns: Optional[Sequence[NormalizedCampaign]] = None,
) -> Reconciliation:
    """Pick one authoritative source per metric family and derive the rest."""
    ledger = sum_day_records(day_records) if day_records else None
    upstream = sum_campaigns(upstream_campaigns) if upstream_campaigns is not None else None

    # Stats: one source, never summed across sources
    if period_summary is not None and period_summary.stats.has_values():
        counters, stats_source = _base_counters(period_summary.stats), SOURCE_SUMMARY
    elif ledger is not None:
        counters, stats_source = ledger[0], SOURCE_LEDGER
    elif upstream is not None:
        counters, stats_source = upstream[0], SOURCE_UPSTREAM
    else:
        counters, stats_source = Counters(), SOURCE_EMPTY

    # Funnel: summary if non-zero, else ledger if non-zero, else upstream
    if period_summary is not None and period_summary.funnel.has_values():
        funnel, funnel_source = _base_funnel(period_summary.funnel), SOURCE_SUMMARY
    elif ledger is not None and ledger[1].has_values():
        funnel, funnel_source = ledger[1], SOURCE_LEDGER
    elif upstream is not None:
        funnel, funnel_source = upstream[1], SOURCE_UPSTREAM
    else:
        funnel, funnel_source = FunnelCounts(), SOURCE_EMPTY

    campaigns: List[NormalizedCampaign] = []
    if period_summary is not None and period_summary.campaigns:
        campaigns = list(period_summary.campaigns)
    elif upstream_campaigns:
        campaigns = list(upstream_campaigns)

    return Reconciliation(
        summary=build_summary(counters, funnel, campaigns),
        stats_source=stats_source,
        funnel_source=funnel_source,
    )


def merge_summaries(summaries: Sequence[PeriodSummary]) -> PeriodSummary:
    """Combine summaries of disjoint sub-ranges into one.

    Campaigns sharing an id are folded together; derived metrics are
    recomputed over the combined counters.
    """
    totals: Dict[str, float] = defaultdict(float)
    merged: Dict[str, NormalizedCampaign] = {}
    for summary in summaries:
        for name in BASE_COUNTER_NAMES:
            totals[name] += getattr(summary.stats, name)
        for name in FUNNEL_COUNTER_NAMES:
            totals[name] += getattr(summary.funnel, name)
        for campaign in summary.campaigns:
            existing = merged.get(campaign.campaign_id)
            if existing is None:
                merged[campaign.campaign_id] = campaign.model_copy(deep=True)
                continue
            stats, funnel = sum_campaigns([existing, campaign])
            merged[campaign.campaign_id] = existing.model_copy(
                update={"stats": stats, "funnel": funnel, "status": campaign.status or existing.status}
            )
    return build_summary(_counters_from(totals), _funnel_from(totals), list(merged.values()))
