"""Sliding-window rate limiter shared by every outbound API call."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, Optional

from ..config.settings import RateLimitConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

GLOBAL_KEY = "global"


class RateLimiter:
    """Admits a call only when both its ``api:method`` window and the global window have room.

    Timestamps come from a monotonic clock. Waiting happens outside the lock so a
    throttled key does not stall callers of other keys.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or get_app_config().rate_limit
        self._clock = clock
        self._sleep = sleep
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._in_flight = asyncio.Semaphore(self._config.max_concurrent)
        self._total_waits = 0
        self._total_wait_seconds = 0.0
        self._logger = get_logger(__name__)

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def apply_config(self, config: RateLimitConfig) -> None:
        """Swap window and caps. The concurrency cap keeps its startup value."""

        self._config = config

    def _prune(self, key: str, now: float) -> None:
        window = self._requests[key]
        cutoff = now - self._config.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _wait_for(self, key: str, cap: int, now: float) -> float:
        window = self._requests[key]
        if len(window) < cap:
            return 0.0
        # The oldest entry that must expire before a slot opens.
        oldest = window[len(window) - cap]
        return oldest + self._config.window_seconds - now + self._config.buffer_seconds

    async def acquire(self, api: str, method: str) -> float:
        """Block until the call may proceed, record it, and return the seconds spent waiting."""

        key = f"{api}:{method}"
        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(key, now)
                self._prune(GLOBAL_KEY, now)
                delay = max(
                    self._wait_for(key, self._config.max_per_method, now),
                    self._wait_for(GLOBAL_KEY, self._config.max_global, now),
                )
                if delay <= 0:
                    self._requests[key].append(now)
                    self._requests[GLOBAL_KEY].append(now)
                    break
                self._total_waits += 1
                self._total_wait_seconds += delay
            METRICS.increment("rate_limiter_waits", api=api)
            self._logger.debug("Rate limit reached for %s, waiting %.3fs", key, delay)
            await self._sleep(delay)
            waited += delay
        if waited:
            METRICS.observe("rate_limiter_wait_seconds", waited, api=api)
        return waited

    @asynccontextmanager
    async def limit(self, api: str, method: str) -> AsyncIterator[float]:
        """Acquire a window slot and hold one of the concurrent-call slots for the block."""

        waited = await self.acquire(api, method)
        async with self._in_flight:
            yield waited

    def stats(self) -> Dict[str, object]:
        now = self._clock()
        counts = {}
        for key in list(self._requests):
            self._prune(key, now)
            counts[key] = len(self._requests[key])
        return {
            "window_seconds": self._config.window_seconds,
            "requests_in_window": counts,
            "total_waits": self._total_waits,
            "total_wait_seconds": round(self._total_wait_seconds, 3),
        }


__all__ = ["GLOBAL_KEY", "RateLimiter"]
