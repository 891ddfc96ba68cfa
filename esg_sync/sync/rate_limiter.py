"""Per-connector outbound rate limiting."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from threading import Lock

from ..monitoring.metrics import observe_rate_limit_wait
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "rate_limiter"})

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class SlidingWindowRateLimiter:
    """
    Sliding-window permit log.

    Each acquired permit is released automatically ``window_seconds`` after it
    was taken. Callers that find the window full suspend with ``sleep`` until
    the oldest permit expires; waiters are served in arrival order.
    """

    def __init__(
        self,
        requests_per_window: int,
        window_seconds: float = 60.0,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_window: Maximum permits handed out per window
            window_seconds: Window duration in seconds
            clock: Monotonic clock used to timestamp permits
            sleep: Coroutine used to suspend waiting callers
        """
        if requests_per_window <= 0:
            raise ValueError("requests_per_window must be greater than zero")
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._permits: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._permits and self._permits[0] <= cutoff:
            self._permits.popleft()

    async def acquire(self) -> float:
        """Take one permit, waiting as needed; return the seconds spent waiting."""

        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._permits) < self.requests_per_window:
                    self._permits.append(now)
                    return waited
                delay = max(self._permits[0] + self.window_seconds - now, 0.0)
                waited += delay
                await self._sleep(delay)


class RateLimiterRegistry:
    """One limiter per connector id; a changed rate replaces the limiter."""

    def __init__(
        self,
        window_seconds: float = 60.0,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[int, SlidingWindowRateLimiter] = {}
        self._lock = Lock()

    def limiter_for(self, connector_id: int, requests_per_minute: int) -> SlidingWindowRateLimiter:
        with self._lock:
            limiter = self._limiters.get(connector_id)
            if limiter is None or limiter.requests_per_window != requests_per_minute:
                limiter = SlidingWindowRateLimiter(
                    requests_per_minute,
                    self.window_seconds,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._limiters[connector_id] = limiter
            return limiter

    async def acquire(self, connector_id: int, requests_per_minute: int) -> float:
        """Acquire a permit for ``connector_id`` under its requests-per-minute budget."""

        waited = await self.limiter_for(connector_id, requests_per_minute).acquire()
        observe_rate_limit_wait(waited)
        if waited > 0:
            logger.info(
                f"Rate limit reached; waited {waited:.2f}s for a permit",
                extra={"connector_id": connector_id, "status": "rate_limited"},
            )
        return waited
