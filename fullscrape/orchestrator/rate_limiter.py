"""Process-wide request rate limiter shared by every running job."""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from fullscrape.orchestrator.options import DEFAULT_RATE_LIMIT_RPS

T = TypeVar("T")


class RateLimiter:
    """Spaces out the start of work items to at most ``rps`` per second.

    Each caller reserves the next free start slot under a lock and then sleeps
    outside the lock until its slot arrives, so concurrent jobs are admitted in
    arrival order without holding the lock while waiting. A rate of zero or less
    disables limiting.
    """

    def __init__(
        self,
        rps: float = DEFAULT_RATE_LIMIT_RPS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._rps = rps
        self._clock = clock
        self._sleep = sleep
        self._next_allowed: Optional[float] = None
        self._lock = asyncio.Lock()
        self.total_requests = 0
        self.throttled_requests = 0

    @property
    def rate_limit(self) -> float:
        return self._rps

    def set_rate_limit(self, rps: float) -> None:
        """Change the rate for subsequent ``execute`` calls."""
        self._rps = rps

    async def _reserve_slot(self) -> float:
        async with self._lock:
            now = self._clock()
            self.total_requests += 1
            if self._rps <= 0:
                self._next_allowed = None
                return 0.0
            interval = 1.0 / self._rps
            start = now if self._next_allowed is None else max(now, self._next_allowed)
            self._next_allowed = start + interval
            return start - now

    async def wait_for_slot(self) -> None:
        """Suspend the caller until it may start a request."""
        delay = await self._reserve_slot()
        if delay > 0:
            self.throttled_requests += 1
            await self._sleep(delay)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once a slot is free; its result or exception passes through."""
        await self.wait_for_slot()
        return await fn()

    def reset(self) -> None:
        self._next_allowed = None
        self.total_requests = 0
        self.throttled_requests = 0
