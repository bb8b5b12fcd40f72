"""PERFCACHE — Google Ads Rows → Normalized Transformer.

Google Ads reports funnel stages as free-text conversion action names set
up per account, so stages are recognised by keyword.
"""

import re
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from perfcache.core.logging import get_logger
from perfcache.core.metric_registry import FunnelStage
from perfcache.models.summary_models import Counters, FunnelCounts, NormalizedCampaign

logger = get_logger("google.transformer")

MICROS = 1_000_000

# Checked in order; the first matching stage wins
STAGE_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (FunnelStage.BOOKING_STEP_1.value, ("step 1", "step_1", "step1", "krok 1", "krok_1")),
    (FunnelStage.BOOKING_STEP_2.value, ("step 2", "step_2", "step2", "krok 2", "krok_2")),
    (FunnelStage.BOOKING_STEP_3.value, ("step 3", "step_3", "step3", "krok 3", "krok_3")),
    (FunnelStage.CLICK_TO_CALL.value, ("phone", "telefon", "call")),
    (FunnelStage.EMAIL_CONTACTS.value, ("email", "e-mail", "mail", "contact", "kontakt", "formularz")),
    (FunnelStage.RESERVATIONS.value, ("rezerwacja", "reservation", "zakup", "purchase", "complete")),
)

_SPACES = re.compile(r"\s+")


def stage_for_action(action_name: str) -> Optional[str]:
    """Funnel stage for a conversion action name, or ``None`` if unrecognised."""
    name = _SPACES.sub(" ", (action_name or "").lower())
    for stage, keywords in STAGE_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return stage
    return None


def build_funnels(
    conversion_rows: Iterable[Dict[str, Any]],
) -> Dict[str, FunnelCounts]:
    """Fold per-(campaign, conversion action) rows into funnel counts per campaign."""
    sums: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    unmapped = set()
    for row in conversion_rows:
        action_name = row.get("conversion_action_name", "")
        stage = stage_for_action(action_name)
        if stage is None:
            unmapped.add(action_name)
            continue
        campaign = sums[str(row["campaign_id"])]
        campaign[stage] += row.get("conversions", 0) or 0
        if stage == FunnelStage.RESERVATIONS.value:
            campaign["reservation_value"] += row.get("conversions_value", 0) or 0

    if unmapped:
        logger.debug(f"Unmapped conversion actions: {sorted(unmapped)}")

    return {
        campaign_id: FunnelCounts(
            click_to_call=round(values["click_to_call"]),
            email_contacts=round(values["email_contacts"]),
            booking_step_1=round(values["booking_step_1"]),
            booking_step_2=round(values["booking_step_2"]),
            booking_step_3=round(values["booking_step_3"]),
            reservations=round(values["reservations"]),
            reservation_value=round(values["reservation_value"], 2),
        )
        for campaign_id, values in sums.items()
    }


def transform_rows(
    campaign_rows: Iterable[Dict[str, Any]],
    conversion_rows: Iterable[Dict[str, Any]] = (),
) -> List[NormalizedCampaign]:
    """Combine campaign metric rows with their conversion-action breakdown."""
    funnels = build_funnels(conversion_rows)
    campaigns: List[NormalizedCampaign] = []
    for row in campaign_rows:
        campaign_id = str(row["campaign_id"])
        campaigns.append(
            NormalizedCampaign(
                campaign_id=campaign_id,
                campaign_name=row.get("campaign_name", ""),
                status=row.get("campaign_status", ""),
                stats=Counters(
                    spend=round((row.get("cost_micros", 0) or 0) / MICROS, 2),
                    impressions=int(row.get("impressions", 0) or 0),
                    clicks=int(row.get("clicks", 0) or 0),
                    conversions=round(row.get("conversions", 0) or 0),
                ),
                funnel=funnels.get(campaign_id, FunnelCounts()),
            )
        )
    return campaigns
