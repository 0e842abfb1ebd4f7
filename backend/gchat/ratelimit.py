from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, List

from .errors import RateLimitExceeded

LOGGER = logging.getLogger("gchat.ratelimit")


class RateLimiter:
    """Sliding-window request counter per client key.

    Constructed once at startup and owned by the application; stale clients
    are dropped by :meth:`run_sweeper`, which the lifespan starts and cancels.
    """

    def __init__(
        self,
        window_seconds: int,
        max_requests: int,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.enabled = enabled
        self._clock = clock
        self._buckets: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> None:
        if not self.enabled:
            return

        now = self._clock()
        start = now - self.window_seconds
        with self._lock:
            arr = [t for t in self._buckets.get(key, []) if t > start]
            if len(arr) >= self.max_requests:
                self._buckets[key] = arr
                retry_after = max(1, int(self.window_seconds - (now - arr[0])))
                raise RateLimitExceeded(retry_after_seconds=retry_after)
            arr.append(now)
            self._buckets[key] = arr

    def sweep(self, idle_seconds: float) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, arr in self._buckets.items() if not arr or now - arr[-1] > idle_seconds]
            for key in stale:
                del self._buckets[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    async def run_sweeper(self, interval_seconds: float = 60.0, idle_seconds: float = 180.0) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep(idle_seconds)
            if removed:
                LOGGER.debug("rate limiter dropped %s idle clients", removed)
