"""PERFCACHE — Upstream Fetch Adapter Contract."""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, List, Mapping

from perfcache.core.errors import PerfCacheError, UnsupportedPlatform, UpstreamUnavailable
from perfcache.core.logging import get_logger
from perfcache.models.summary_models import NormalizedCampaign

logger = get_logger("connectors")


class UpstreamFetchAdapter(ABC):
    """Abstract base for advertising-platform adapters.

    Adapters return campaigns already mapped into the canonical funnel
    vocabulary and raise ``UpstreamUnavailable`` / ``UpstreamAuthInvalid``
    for platform failures.
    """

    platform: str = ""

    @abstractmethod
    async def fetch_range(
        self, client_id: str, start: date, end: date
    ) -> List[NormalizedCampaign]:
        """Fetch per-campaign metrics for the inclusive date range.

        Args:
            client_id: Engine-side client identifier.
            start: First day of the range.
            end: Last day of the range.

        Returns:
            One ``NormalizedCampaign`` per campaign with activity.
        """
        ...

    @abstractmethod
    def client_ids(self) -> List[str]:
        """Clients this adapter has credentials for."""
        ...

    async def close(self) -> None:
        return None


class UpstreamFetcher:
    """Dispatches to the platform adapter under a hard timeout."""

    def __init__(
        self,
        adapters: Mapping[str, UpstreamFetchAdapter],
        timeout_seconds: float = 60.0,
    ):
        self.adapters: Dict[str, UpstreamFetchAdapter] = dict(adapters)
        self.timeout_seconds = timeout_seconds

    @property
    def platforms(self) -> List[str]:
        return sorted(self.adapters)

    def adapter_for(self, platform: str) -> UpstreamFetchAdapter:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise UnsupportedPlatform(f"No upstream adapter registered for '{platform}'")
        return adapter

    async def fetch_range(
        self, client_id: str, platform: str, start: date, end: date
    ) -> List[NormalizedCampaign]:
        adapter = self.adapter_for(platform)
        started = time.perf_counter()
        try:
            campaigns = await asyncio.wait_for(
                adapter.fetch_range(client_id, start, end), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.error(
                f"Upstream fetch timed out after {self.timeout_seconds}s",
                extra={"client_id": client_id, "platform": platform},
            )
            raise UpstreamUnavailable(
                f"{platform} fetch for {client_id} timed out after {self.timeout_seconds}s"
            ) from e
        except PerfCacheError:
            raise
        except Exception as e:
            logger.error(
                f"Upstream adapter raised {type(e).__name__}: {e}",
                extra={"client_id": client_id, "platform": platform},
            )
            raise UpstreamUnavailable(
                f"{platform} fetch for {client_id} failed: {type(e).__name__}: {e}"
            ) from e

        logger.info(
            f"Fetched {len(campaigns)} campaigns for {start} → {end}",
            extra={
                "client_id": client_id,
                "platform": platform,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return campaigns

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
