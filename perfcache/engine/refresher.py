"""PERFCACHE — Background Refresher.

Fire-and-forget refresh of stale hot-cache entries, guarded by a per-key
cooldown so a burst of readers hitting the same stale key triggers one
refresh. The cooldown map is independent of the coalescer's map.
"""

import asyncio
import threading
import time
from typing import Awaitable, Callable, Dict, Hashable, Iterable, Optional, Set

from perfcache.core.logging import get_logger

logger = get_logger("engine.refresher")


class BackgroundRefresher:
    def __init__(
        self,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.enabled = enabled
        self._last_started: Dict[Hashable, float] = {}
        self._last_error: Dict[Hashable, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _claim(self, key: Hashable) -> bool:
        """Stamp the cooldown for ``key`` unless one is already running."""
        now = self.clock()
        with self._lock:
            last = self._last_started.get(key)
            if last is not None and now - last < self.cooldown_seconds:
                return False
            self._last_started[key] = now
            return True

    def trigger(
        self, key: Hashable, refresh: Callable[[], Awaitable[None]]
    ) -> Optional[asyncio.Task]:
        """Schedule ``refresh`` unless disabled or within the cooldown."""
        if not self.enabled:
            return None
        if not self._claim(key):
            logger.debug(f"Refresh cooldown active for {key}, skipping")
            return None

        task = asyncio.get_running_loop().create_task(self._run(key, refresh))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, key: Hashable, refresh: Callable[[], Awaitable[None]]) -> None:
        started = time.perf_counter()
        try:
            await refresh()
        except Exception as e:
            # Cooldown stays stamped: an outage must not turn into a refresh storm
            with self._lock:
                self._last_error[key] = f"{type(e).__name__}: {e}"
            logger.error(f"Background refresh failed for {key}: {e}")
        else:
            with self._lock:
                self._last_error.pop(key, None)
            logger.info(
                f"Background refresh completed for {key}",
                extra={"duration_ms": round((time.perf_counter() - started) * 1000, 1)},
            )

    def last_error(self, key: Hashable) -> Optional[str]:
        with self._lock:
            return self._last_error.get(key)

    def sweep(
        self, now: Optional[float] = None, live_keys: Optional[Iterable[Hashable]] = None
    ) -> int:
        """Forget expired cooldown stamps and errors for keys no longer tracked.

        With ``live_keys``, recorded errors survive only for those keys (the
        ones still backed by a hot entry). Without it, an error is dropped
        together with its expired cooldown stamp.
        """
        now = self.clock() if now is None else now
        with self._lock:
            expired = [
                key
                for key, started in self._last_started.items()
                if now - started >= self.cooldown_seconds
            ]
            for key in expired:
                del self._last_started[key]

            if live_keys is None:
                stale_errors = [key for key in expired if key in self._last_error]
            else:
                live = set(live_keys)
                stale_errors = [key for key in self._last_error if key not in live]
            for key in stale_errors:
                del self._last_error[key]
        return len(expired)

    async def drain(self) -> None:
        """Wait for every scheduled refresh to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
