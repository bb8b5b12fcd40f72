"""PERFCACHE — Google Ads Upstream Fetch Adapter.

Uses the official google-ads client. Its transport is synchronous gRPC, so
each query runs in a worker thread.
"""

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

from google.ads.googleads.client import GoogleAdsClient
from google.ads.googleads.errors import GoogleAdsException
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import RefreshError

from perfcache.config import settings
from perfcache.connectors.base import UpstreamFetchAdapter
from perfcache.connectors.google.transformer import transform_rows
from perfcache.core.errors import UpstreamAuthInvalid, UpstreamUnavailable
from perfcache.core.logging import get_logger
from perfcache.models.summary_models import NormalizedCampaign

logger = get_logger("google.adapter")

CAMPAIGN_QUERY = """
    SELECT
        campaign.id,
        campaign.name,
        campaign.status,
        metrics.cost_micros,
        metrics.impressions,
        metrics.clicks,
        metrics.conversions
    FROM campaign
    WHERE segments.date BETWEEN '{start}' AND '{end}'
        AND campaign.status != 'REMOVED'
"""

CONVERSION_QUERY = """
    SELECT
        campaign.id,
        segments.conversion_action_name,
        metrics.all_conversions,
        metrics.all_conversions_value
    FROM campaign
    WHERE segments.date BETWEEN '{start}' AND '{end}'
        AND campaign.status != 'REMOVED'
"""

AUTH_STATUS_NAMES = {"UNAUTHENTICATED", "PERMISSION_DENIED"}


class GoogleAdsFetchAdapter(UpstreamFetchAdapter):
    """Fetches campaign metrics from the Google Ads API."""

    platform = "google"

    def __init__(
        self,
        customers: Optional[Dict[str, str]] = None,
        client: Optional[GoogleAdsClient] = None,
    ):
        self.customers = dict(
            customers if customers is not None else settings.google_ads_client_customers
        )
        self._client = client

    def client_ids(self) -> List[str]:
        return sorted(self.customers)

    def _check_credentials(self) -> None:
        missing = [
            name
            for name in (
                "google_ads_developer_token",
                "google_ads_client_id",
                "google_ads_client_secret",
                "google_ads_refresh_token",
            )
            if not getattr(settings, name)
        ]
        if missing:
            raise UpstreamAuthInvalid(f"Missing Google Ads credentials: {', '.join(missing)}")

    def _get_client(self) -> GoogleAdsClient:
        if self._client is None:
            self._check_credentials()
            credentials = {
                "developer_token": settings.google_ads_developer_token,
                "client_id": settings.google_ads_client_id,
                "client_secret": settings.google_ads_client_secret,
                "refresh_token": settings.google_ads_refresh_token,
                "use_proto_plus": True,
            }
            if settings.google_ads_login_customer_id:
                credentials["login_customer_id"] = settings.google_ads_login_customer_id.replace("-", "")
            self._client = GoogleAdsClient.load_from_dict(credentials)
        return self._client

    def _customer_for(self, client_id: str) -> str:
        customer_id = self.customers.get(client_id)
        if not customer_id:
            raise UpstreamAuthInvalid(f"No Google Ads customer configured for client '{client_id}'")
        return customer_id.replace("-", "")

    def _search(self, customer_id: str, query: str) -> List[Any]:
        ga_service = self._get_client().get_service("GoogleAdsService")
        rows: List[Any] = []
        for batch in ga_service.search_stream(customer_id=customer_id, query=query):
            rows.extend(batch.results)
        return rows

    def _fetch_sync(self, customer_id: str, start: date, end: date) -> List[NormalizedCampaign]:
        window = {"start": start.isoformat(), "end": end.isoformat()}
        campaign_rows = [
            {
                "campaign_id": row.campaign.id,
                "campaign_name": row.campaign.name,
                "campaign_status": row.campaign.status.name,
                "cost_micros": row.metrics.cost_micros,
                "impressions": row.metrics.impressions,
                "clicks": row.metrics.clicks,
                "conversions": row.metrics.conversions,
            }
            for row in self._search(customer_id, CAMPAIGN_QUERY.format(**window))
        ]
        conversion_rows = [
            {
                "campaign_id": row.campaign.id,
                "conversion_action_name": row.segments.conversion_action_name,
                "conversions": row.metrics.all_conversions,
                "conversions_value": row.metrics.all_conversions_value,
            }
            for row in self._search(customer_id, CONVERSION_QUERY.format(**window))
        ]
        return transform_rows(campaign_rows, conversion_rows)

    async def fetch_range(
        self, client_id: str, start: date, end: date
    ) -> List[NormalizedCampaign]:
        customer_id = self._customer_for(client_id)
        try:
            return await asyncio.to_thread(self._fetch_sync, customer_id, start, end)
        except GoogleAdsException as e:
            status = e.error.code().name if e.error is not None else ""
            messages = "; ".join(err.message for err in e.failure.errors)
            logger.error(
                f"Google Ads request {e.request_id} failed ({status}): {messages}",
                extra={"client_id": client_id, "platform": self.platform},
            )
            if status in AUTH_STATUS_NAMES:
                raise UpstreamAuthInvalid(f"Google Ads rejected credentials: {messages}") from e
            raise UpstreamUnavailable(f"Google Ads request failed: {messages}") from e
        except RefreshError as e:
            logger.error(f"Google OAuth refresh failed: {e}", extra={"client_id": client_id})
            raise UpstreamAuthInvalid(f"Google OAuth refresh token rejected: {e}") from e
        except GoogleAPIError as e:
            logger.error(f"Google Ads transport error: {e}", extra={"client_id": client_id})
            raise UpstreamUnavailable(f"Google Ads unavailable: {e}") from e
