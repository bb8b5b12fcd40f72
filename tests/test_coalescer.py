import asyncio

import pytest

from perfcache.core.errors import UpstreamUnavailable
from perfcache.engine.coalescer import RequestCoalescer
from perfcache.engine.refresher import BackgroundRefresher


class TickClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_concurrent_identical_work_runs_once():
    coalescer = RequestCoalescer(ceiling_seconds=30)
    calls = []

    async def work():
        calls.append(1)
        await asyncio.sleep(0.01)
        return {"value": 42}

    results = await asyncio.gather(*(coalescer.run("k", work) for _ in range(20)))

    assert len(calls) == 1
    assert all(r == {"value": 42} for r in results)
    assert len(coalescer) == 0


@pytest.mark.asyncio
async def test_failure_releases_every_follower():
    coalescer = RequestCoalescer(ceiling_seconds=30)

    async def work():
        await asyncio.sleep(0.01)
        raise RuntimeError("upstream down")

    results = await asyncio.gather(
        *(coalescer.run("k", work) for _ in range(5)), return_exceptions=True
    )

    assert all(isinstance(r, RuntimeError) for r in results)
    assert len(coalescer) == 0


@pytest.mark.asyncio
async def test_cancelled_leader_fails_followers_without_cancelling_them():
    coalescer = RequestCoalescer(ceiling_seconds=30)

    async def work():
        await asyncio.sleep(1)
        return "late"

    leader = asyncio.create_task(coalescer.run("k", work))
    await asyncio.sleep(0)
    follower = asyncio.create_task(coalescer.run("k", work))
    await asyncio.sleep(0)

    leader.cancel()

    with pytest.raises(asyncio.CancelledError):
        await leader
    with pytest.raises(UpstreamUnavailable):
        await follower
    assert not follower.cancelled()
    assert len(coalescer) == 0


@pytest.mark.asyncio
async def test_entry_older_than_ceiling_is_replaced():
    clock = TickClock()
    coalescer = RequestCoalescer(ceiling_seconds=30, clock=clock)

    first, leader = coalescer.acquire("k")
    assert leader
    clock.now = 31.0
    second, leader_again = coalescer.acquire("k")

    assert leader_again
    assert second is not first


@pytest.mark.asyncio
async def test_sweep_bounds_the_map():
    clock = TickClock()
    coalescer = RequestCoalescer(ceiling_seconds=30, clock=clock)
    coalescer.acquire("a")
    coalescer.acquire("b")

    clock.now = 10.0
    assert coalescer.sweep() == 0
    clock.now = 45.0
    assert coalescer.sweep() == 2
    assert len(coalescer) == 0


@pytest.mark.asyncio
async def test_refresh_cooldown_suppresses_storm():
    clock = TickClock()
    refresher = BackgroundRefresher(cooldown_seconds=300, clock=clock)
    runs = []

    async def refresh():
        runs.append(1)

    tasks = [refresher.trigger("k", refresh) for _ in range(10)]
    await refresher.drain()

    assert sum(t is not None for t in tasks) == 1
    assert len(runs) == 1

    clock.now = 301.0
    assert refresher.trigger("k", refresh) is not None
    await refresher.drain()
    assert len(runs) == 2


@pytest.mark.asyncio
async def test_failed_refresh_records_error_and_keeps_cooldown():
    clock = TickClock()
    refresher = BackgroundRefresher(cooldown_seconds=300, clock=clock)

    async def refresh():
        raise ConnectionError("timeout")

    refresher.trigger("k", refresh)
    await refresher.drain()

    assert refresher.last_error("k") == "ConnectionError: timeout"
    assert refresher.trigger("k", refresh) is None


@pytest.mark.asyncio
async def test_disabled_refresher_never_schedules():
    refresher = BackgroundRefresher(enabled=False)

    async def refresh():
        raise AssertionError("should not run")

    assert refresher.trigger("k", refresh) is None
    assert refresher.pending == 0


@pytest.mark.asyncio
async def test_sweep_forgets_errors_for_keys_without_hot_entries():
    clock = TickClock()
    refresher = BackgroundRefresher(cooldown_seconds=300, clock=clock)

    async def refresh():
        raise ConnectionError("timeout")

    for key in ("gone", "kept"):
        refresher.trigger(key, refresh)
    await refresher.drain()

    refresher.sweep(live_keys=["kept"])

    assert refresher.last_error("gone") is None
    assert refresher.last_error("kept") == "ConnectionError: timeout"


@pytest.mark.asyncio
async def test_sweep_drops_error_with_expired_cooldown():
    clock = TickClock()
    refresher = BackgroundRefresher(cooldown_seconds=300, clock=clock)

    async def refresh():
        raise ConnectionError("timeout")

    refresher.trigger("k", refresh)
    await refresher.drain()

    clock.now = 100.0
    assert refresher.sweep() == 0
    assert refresher.last_error("k") is not None

    clock.now = 400.0
    assert refresher.sweep() == 1
    assert refresher.last_error("k") is None
