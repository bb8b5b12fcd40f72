"""Shared fixtures: in-memory database, fixed clock, counting fake adapter."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from perfcache.connectors.base import UpstreamFetchAdapter, UpstreamFetcher
from perfcache.engine.service import MetricsEngine
from perfcache.models import store_models  # noqa: F401
from perfcache.models.summary_models import Counters, FunnelCounts, NormalizedCampaign
from perfcache.stores.sql_store import SQLStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class CountingAdapter(UpstreamFetchAdapter):
    """Upstream stand-in that records every call."""

    platform = "meta"

    def __init__(
        self,
        campaigns: Optional[List[NormalizedCampaign]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.campaigns = campaigns or []
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    def client_ids(self) -> List[str]:
        return ["hotel-a"]

    async def fetch_range(self, client_id: str, start: date, end: date):
        self.calls.append((client_id, start, end))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [c.model_copy(deep=True) for c in self.campaigns]


def make_campaign(
    campaign_id: str = "c1",
    spend: float = 0.0,
    impressions: int = 0,
    clicks: int = 0,
    reservations: int = 0,
    reservation_value: float = 0.0,
    **funnel,
) -> NormalizedCampaign:
    return NormalizedCampaign(
        campaign_id=campaign_id,
        campaign_name=f"Campaign {campaign_id}",
        status="ACTIVE",
        stats=Counters(
            spend=spend, impressions=impressions, clicks=clicks, conversions=reservations
        ),
        funnel=FunnelCounts(
            reservations=reservations, reservation_value=reservation_value, **funnel
        ),
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return SQLStore(db_engine)


@pytest.fixture
def clock():
    # Friday, mid-March 2024
    return FakeClock(datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def adapter():
    return CountingAdapter(
        campaigns=[
            make_campaign(
                spend=500.0,
                impressions=10000,
                clicks=200,
                reservations=4,
                reservation_value=2000.0,
            )
        ]
    )


@pytest.fixture
def metrics_engine(store, adapter, clock):
    return MetricsEngine(store, UpstreamFetcher({"meta": adapter}, timeout_seconds=5), clock=clock)
