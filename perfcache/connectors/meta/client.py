"""PERFCACHE — Meta Marketing API Client.

Handles authentication, retry logic, rate limiting, and pagination for one
ad account.
"""

import asyncio
import json
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from perfcache.config import settings
from perfcache.core.logging import get_logger

logger = get_logger("meta.client")

META_BASE = f"{settings.meta_base_url}/{settings.meta_api_version}"
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds

# Meta error codes meaning the token is expired, revoked or lacks permission
AUTH_ERROR_CODES = {102, 190, 200, 10}

INSIGHT_FIELDS = (
    "campaign_id,campaign_name,"
    "impressions,reach,clicks,spend,"
    "actions,action_values"
)
CAMPAIGN_FIELDS = "id,name,status,effective_status"


class MetaAPIError(Exception):
    """Raised when Meta API returns an error."""

    def __init__(self, message: str, status_code: int = 0, error_code: int = 0):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403) or self.error_code in AUTH_ERROR_CODES

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or self.error_code in (4, 17, 32, 613)


class MetaClient:
    """Async HTTP client for the Meta Marketing API, bound to one ad account."""

    def __init__(
        self,
        access_token: str,
        ad_account_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.access_token = access_token
        self.ad_account_id = (
            ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"
        )
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make a request with retry + rate-limit handling."""
        params = dict(params or {})
        params["access_token"] = self.access_token

        client = await self._get_client()

        for attempt in range(1, MAX_RETRIES + 1):
            wait = self.retry_base_delay * (2 ** (attempt - 1))
            try:
                resp = await client.request(method, url, params=params)

                # Rate limited
                if resp.status_code == 429:
                    if attempt == MAX_RETRIES:
                        raise MetaAPIError("Rate limited, retries exhausted", 429)
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{MAX_RETRIES})"
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp.json()

            except httpx.HTTPStatusError as e:
                body = (
                    e.response.json()
                    if e.response.headers.get("content-type", "").startswith(
                        "application/json"
                    )
                    else {}
                )
                error_msg = body.get("error", {}).get("message", str(e))
                error_code = body.get("error", {}).get("code", 0)

                if attempt < MAX_RETRIES and e.response.status_code >= 500:
                    logger.warning(
                        f"Server error {e.response.status_code}. Retrying in {wait}s"
                    )
                    await asyncio.sleep(wait)
                    continue

                raise MetaAPIError(error_msg, e.response.status_code, error_code) from e

            except httpx.RequestError as e:
                if attempt < MAX_RETRIES:
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise MetaAPIError(
                    f"Connection failed after {MAX_RETRIES} retries: {e}"
                ) from e

        raise MetaAPIError("Max retries exhausted")

    # ── Pagination ──

    async def _paginated_get(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 50,
    ) -> List[Dict[str, Any]]:
        """Fetch all pages of a paginated endpoint."""
        all_data: List[Dict[str, Any]] = []
        current_url = url

        for page in range(max_pages):
            result = await self._request(
                "GET", current_url, params if page == 0 else None
            )
            all_data.extend(result.get("data", []))

            next_url = result.get("paging", {}).get("next")
            if not next_url:
                break
            current_url = next_url

        logger.info(f"Fetched {len(all_data)} records from {url}")
        return all_data

    # ── Resources ──

    async def fetch_campaign_insights(self, since: date, until: date) -> List[Dict[str, Any]]:
        """Campaign-level insights aggregated over the whole range."""
        url = f"{META_BASE}/{self.ad_account_id}/insights"
        params = {
            "level": "campaign",
            "fields": INSIGHT_FIELDS,
            "time_range": json.dumps(
                {"since": since.isoformat(), "until": until.isoformat()}
            ),
            "time_increment": "all_days",
            "limit": 500,
        }
        return await self._paginated_get(url, params)

    async def fetch_campaigns(self) -> List[Dict[str, Any]]:
        """Campaign id, name and delivery status for the account."""
        url = f"{META_BASE}/{self.ad_account_id}/campaigns"
        params = {"fields": CAMPAIGN_FIELDS, "limit": 500}
        return await self._paginated_get(url, params)
