"""PERFCACHE — Unified Metric Registry.

Defines the canonical counters and the fixed funnel-stage vocabulary.
Platform adapters map their own conversion names into ``FunnelStage``;
nothing past the adapter boundary ever sees a platform-specific name.
"""

from enum import Enum
from typing import Dict


class MetricType(str, Enum):
    """How a metric is categorised."""

    VOLUME = "volume"  # Raw counts: impressions, clicks, reach
    COST = "cost"  # Monetary: spend
    REVENUE = "revenue"  # Income: reservation_value
    FUNNEL = "funnel"  # Conversion stage counters


class FunnelStage(str, Enum):
    """Fixed conversion-funnel vocabulary, ordered top to bottom."""

    CLICK_TO_CALL = "click_to_call"
    EMAIL_CONTACTS = "email_contacts"
    BOOKING_STEP_1 = "booking_step_1"
    BOOKING_STEP_2 = "booking_step_2"
    BOOKING_STEP_3 = "booking_step_3"
    RESERVATIONS = "reservations"


class MetricDefinition:
    """Describes a single metric."""

    def __init__(
        self, name: str, metric_type: MetricType, unit: str = "", description: str = ""
    ):
        self.name = name
        self.metric_type = metric_type
        self.unit = unit
        self.description = description

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


# ─────────────────────────────────────────────
# BASE COUNTERS: summed across days / campaigns
# ─────────────────────────────────────────────

BASE_METRICS: Dict[str, MetricDefinition] = {
    "spend": MetricDefinition("spend", MetricType.COST, "currency", "Total amount spent"),
    "impressions": MetricDefinition(
        "impressions", MetricType.VOLUME, "count", "Number of times ad was shown"
    ),
    "clicks": MetricDefinition("clicks", MetricType.VOLUME, "count", "Total clicks"),
    "conversions": MetricDefinition(
        "conversions", MetricType.VOLUME, "count", "Platform-reported conversions"
    ),
    "reach": MetricDefinition("reach", MetricType.VOLUME, "count", "Unique users reached"),
}


# ─────────────────────────────────────────────
# FUNNEL: one counter per stage plus monetary value
# ─────────────────────────────────────────────

FUNNEL_METRICS: Dict[str, MetricDefinition] = {
    FunnelStage.CLICK_TO_CALL.value: MetricDefinition(
        "click_to_call", MetricType.FUNNEL, "count", "Phone contacts"
    ),
    FunnelStage.EMAIL_CONTACTS.value: MetricDefinition(
        "email_contacts", MetricType.FUNNEL, "count", "Email / form contacts"
    ),
    FunnelStage.BOOKING_STEP_1.value: MetricDefinition(
        "booking_step_1", MetricType.FUNNEL, "count", "Booking engine search"
    ),
    FunnelStage.BOOKING_STEP_2.value: MetricDefinition(
        "booking_step_2", MetricType.FUNNEL, "count", "Booking engine details view"
    ),
    FunnelStage.BOOKING_STEP_3.value: MetricDefinition(
        "booking_step_3", MetricType.FUNNEL, "count", "Booking engine checkout start"
    ),
    FunnelStage.RESERVATIONS.value: MetricDefinition(
        "reservations", MetricType.FUNNEL, "count", "Completed reservations"
    ),
    "reservation_value": MetricDefinition(
        "reservation_value", MetricType.REVENUE, "currency", "Value of reservations"
    ),
}


# Derived metrics (ctr, cpc, roas, cost_per_conversion) are never stored as
# truth; the reconciler recomputes them from these counters on every read.

BASE_COUNTER_NAMES = tuple(BASE_METRICS)
FUNNEL_COUNTER_NAMES = tuple(FUNNEL_METRICS)
