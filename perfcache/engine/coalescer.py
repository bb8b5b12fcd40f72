"""PERFCACHE — Request Coalescer.

At most one in-flight resolution per (client, platform, date range). The
first caller becomes the leader and runs the resolution; everyone arriving
while it runs awaits the same future. Entries older than the ceiling are
treated as dead leaders and replaced, and ``sweep`` drops them so the map
stays bounded.
"""

import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

from perfcache.core.errors import UpstreamUnavailable
from perfcache.core.logging import get_logger

logger = get_logger("engine.coalescer")


class _InFlight:
    __slots__ = ("future", "started_at")

    def __init__(self, future: asyncio.Future, started_at: float):
        self.future = future
        self.started_at = started_at


class RequestCoalescer:
    """Concurrency-safe map of in-flight resolutions."""

    def __init__(
        self,
        ceiling_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ceiling_seconds = ceiling_seconds
        self.clock = clock
        self._inflight: Dict[Hashable, _InFlight] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._inflight)

    def acquire(self, key: Hashable) -> Tuple[asyncio.Future, bool]:
        """Return ``(future, is_leader)`` for ``key``."""
        now = self.clock()
        with self._lock:
            entry = self._inflight.get(key)
            if entry is not None and not entry.future.done():
                if now - entry.started_at < self.ceiling_seconds:
                    return entry.future, False
                logger.warning(f"Replacing in-flight request older than ceiling: {key}")
            future = asyncio.get_running_loop().create_future()
            self._inflight[key] = _InFlight(future, now)
            return future, True

    def release(self, key: Hashable, future: asyncio.Future) -> None:
        """Drop the map entry if it still belongs to ``future``."""
        with self._lock:
            entry = self._inflight.get(key)
            if entry is not None and entry.future is future:
                del self._inflight[key]

    async def run(self, key: Hashable, work: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``work`` once per key; concurrent callers share its outcome."""
        future, is_leader = self.acquire(key)
        if not is_leader:
            logger.debug(f"Joining in-flight request {key}")
            return await asyncio.shield(future)

        try:
            result = await work()
        except asyncio.CancelledError:
            # Followers get an ordinary failure, not the leader's cancellation
            future.set_exception(UpstreamUnavailable(f"Leader for {key} was cancelled"))
            future.exception()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a leader with no followers does not warn
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self.release(key, future)

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove entries older than the ceiling. Returns how many were dropped."""
        now = self.clock() if now is None else now
        with self._lock:
            expired = [
                key
                for key, entry in self._inflight.items()
                if now - entry.started_at >= self.ceiling_seconds
            ]
            for key in expired:
                del self._inflight[key]
        if expired:
            logger.info(f"Swept {len(expired)} expired in-flight entries")
        return len(expired)
