"""PERFCACHE — Meta Upstream Fetch Adapter."""

from datetime import date
from typing import Dict, List, Optional

import httpx

from perfcache.config import settings
from perfcache.connectors.base import UpstreamFetchAdapter
from perfcache.connectors.meta.client import MetaAPIError, MetaClient
from perfcache.connectors.meta.transformer import transform_insights
from perfcache.core.errors import UpstreamAuthInvalid, UpstreamUnavailable
from perfcache.core.logging import get_logger
from perfcache.models.summary_models import NormalizedCampaign

logger = get_logger("meta.adapter")


class MetaFetchAdapter(UpstreamFetchAdapter):
    """Fetches campaign metrics from the Meta Marketing API."""

    platform = "meta"

    def __init__(
        self,
        access_token: Optional[str] = None,
        accounts: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self.access_token = access_token if access_token is not None else settings.meta_access_token
        self.accounts = dict(accounts if accounts is not None else settings.meta_client_accounts)
        self._transport = transport
        self._retry_base_delay = retry_base_delay
        self._clients: Dict[str, MetaClient] = {}

    def client_ids(self) -> List[str]:
        return sorted(self.accounts)

    def _client_for(self, client_id: str) -> MetaClient:
        if not self.access_token:
            raise UpstreamAuthInvalid("Meta access token is not configured")
        account = self.accounts.get(client_id)
        if not account:
            raise UpstreamAuthInvalid(f"No Meta ad account configured for client '{client_id}'")
        if client_id not in self._clients:
            kwargs = {"transport": self._transport}
            if self._retry_base_delay is not None:
                kwargs["retry_base_delay"] = self._retry_base_delay
            self._clients[client_id] = MetaClient(self.access_token, account, **kwargs)
        return self._clients[client_id]

    async def fetch_range(
        self, client_id: str, start: date, end: date
    ) -> List[NormalizedCampaign]:
        client = self._client_for(client_id)
        try:
            insights = await client.fetch_campaign_insights(start, end)
            campaigns = await client.fetch_campaigns() if insights else []
        except MetaAPIError as e:
            logger.error(
                f"Meta API error {e.status_code}/{e.error_code}: {e}",
                extra={"client_id": client_id, "platform": self.platform},
            )
            if e.is_auth_error:
                raise UpstreamAuthInvalid(f"Meta rejected the access token: {e}") from e
            raise UpstreamUnavailable(f"Meta API unavailable: {e}") from e
        return transform_insights(insights, campaigns)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
