"""PERFCACHE — Meta Raw → Normalized Transformer.

Maps Meta insight rows onto ``NormalizedCampaign``. Meta reports the same
conversion under several action types (omni-channel, pixel, custom
conversions); for each funnel stage the first action type present in the
priority list wins and the others are ignored, so one conversion is never
counted twice.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from perfcache.core.logging import get_logger
from perfcache.core.metric_registry import FunnelStage
from perfcache.models.summary_models import Counters, FunnelCounts, NormalizedCampaign

logger = get_logger("meta.transformer")

# Funnel stage -> action types in priority order
FUNNEL_ACTION_PRIORITY: Dict[str, Tuple[str, ...]] = {
    FunnelStage.CLICK_TO_CALL.value: (
        "offsite_conversion.custom.1470262077092668",
        "click_to_call_call_confirm",
        "click_to_call_native_call_placed",
    ),
    FunnelStage.EMAIL_CONTACTS.value: (
        "offsite_conversion.custom.2770488499782793",
        "lead",
        "onsite_conversion.lead_grouped",
    ),
    FunnelStage.BOOKING_STEP_1.value: ("omni_search", "offsite_conversion.fb_pixel_search", "search"),
    FunnelStage.BOOKING_STEP_2.value: (
        "omni_view_content",
        "offsite_conversion.fb_pixel_view_content",
        "view_content",
    ),
    FunnelStage.BOOKING_STEP_3.value: (
        "omni_initiated_checkout",
        "offsite_conversion.fb_pixel_initiate_checkout",
        "initiate_checkout",
    ),
    FunnelStage.RESERVATIONS.value: (
        "omni_purchase",
        "offsite_conversion.fb_pixel_purchase",
        "purchase",
    ),
}

RESERVATION_VALUE_PRIORITY: Tuple[str, ...] = FUNNEL_ACTION_PRIORITY[FunnelStage.RESERVATIONS.value]


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    return int(round(_safe_float(value)))


def _index_actions(actions: Optional[Sequence[Dict[str, Any]]]) -> Dict[str, float]:
    indexed: Dict[str, float] = {}
    for action in actions or []:
        action_type = action.get("action_type")
        if action_type:
            indexed[action_type] = _safe_float(action.get("value", 0))
    return indexed


def _first_present(indexed: Dict[str, float], priority: Sequence[str]) -> float:
    for action_type in priority:
        if action_type in indexed:
            return indexed[action_type]
    return 0.0


def parse_actions(
    actions: Optional[Sequence[Dict[str, Any]]],
    action_values: Optional[Sequence[Dict[str, Any]]] = None,
) -> FunnelCounts:
    """Map Meta ``actions`` / ``action_values`` onto funnel stages."""
    indexed = _index_actions(actions)
    values = _index_actions(action_values)
    stages = {
        stage: _safe_int(_first_present(indexed, priority))
        for stage, priority in FUNNEL_ACTION_PRIORITY.items()
    }
    return FunnelCounts(
        **stages,
        reservation_value=round(_first_present(values, RESERVATION_VALUE_PRIORITY), 2),
    )


def transform_insight_row(
    row: Dict[str, Any], statuses: Optional[Dict[str, str]] = None
) -> NormalizedCampaign:
    """Build one ``NormalizedCampaign`` from a campaign-level insight row."""
    funnel = parse_actions(row.get("actions"), row.get("action_values"))
    campaign_id = str(row.get("campaign_id", ""))
    return NormalizedCampaign(
        campaign_id=campaign_id,
        campaign_name=row.get("campaign_name", ""),
        status=(statuses or {}).get(campaign_id, ""),
        stats=Counters(
            spend=round(_safe_float(row.get("spend")), 2),
            impressions=_safe_int(row.get("impressions")),
            clicks=_safe_int(row.get("clicks")),
            reach=_safe_int(row.get("reach")),
            conversions=funnel.reservations,
        ),
        funnel=funnel,
    )


def transform_insights(
    raw_data: List[Dict[str, Any]],
    campaigns: Optional[List[Dict[str, Any]]] = None,
) -> List[NormalizedCampaign]:
    """Transform raw insight rows, joining delivery status from ``campaigns``."""
    statuses = {
        str(c.get("id")): c.get("effective_status") or c.get("status", "")
        for c in campaigns or []
    }
    result = [transform_insight_row(row, statuses) for row in raw_data if row.get("campaign_id")]
    skipped = len(raw_data) - len(result)
    if skipped:
        logger.warning(f"Skipped {skipped} insight rows without campaign_id")
    return result
