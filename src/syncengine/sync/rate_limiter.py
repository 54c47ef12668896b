"""Sliding-log rate limiter for outbound vendor API calls.

Keeps the timestamps of recent calls. Before each call it drops timestamps
older than the window; if the window is full it sleeps until the oldest one
leaves (plus a small safety buffer) and checks again. An optional minimum
spacing between consecutive calls is enforced the same way.

Callers sharing one limiter are serialized through an asyncio.Lock, so the
window holds at most max_requests calls under concurrency.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.syncengine.sync.observer import SyncObserver, resolve_observer
from src.syncengine.sync.schemas import RateLimitConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SAFETY_BUFFER_SECONDS = 0.05

RATE_LIMIT_PRESETS: dict[str, RateLimitConfig] = {
    # CRM REST API: 100 req / 10 s, kept under the cap
    "crm_rest": RateLimitConfig(max_requests=90, window_ms=10_000, name="crm_rest"),
    # CRM search endpoints: 4 req / s upstream
    "crm_search": RateLimitConfig(
        max_requests=3, window_ms=1_000, min_delay_ms=300, name="crm_search"
    ),
    "call_recording": RateLimitConfig(max_requests=90, window_ms=60_000, name="call_recording"),
    "project_graphql": RateLimitConfig(max_requests=50, window_ms=60_000, name="project_graphql"),
}


class RateLimiter:
    """Bounds the number of calls inside any trailing window.

    Args:
        config: Window size, request cap and optional minimum spacing.
        clock: Monotonic clock in seconds. Injectable for tests.
        sleep: Coroutine used to wait. Injectable for tests.
        observer: Receives a rate_limit_wait event whenever a call was delayed.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        observer: SyncObserver | None = None,
    ) -> None:
        self._config = config
        self._window = config.window_ms / 1000
        self._min_delay = config.min_delay_ms / 1000
        self._clock = clock
        self._sleep = sleep
        self._observer = resolve_observer(observer)
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def from_preset(cls, preset: str, **kwargs: Any) -> RateLimiter:
        """Build a limiter from one of RATE_LIMIT_PRESETS."""
        try:
            config = RATE_LIMIT_PRESETS[preset]
        except KeyError:
            raise ValueError(f"Unknown rate limit preset: {preset!r}") from None
        return cls(config, **kwargs)

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        """Wait until one more call fits in the window, then claim the slot."""
        async with self._lock:
            waited = 0.0
            while True:
                now = self._clock()
                self._prune(now)

                if len(self._timestamps) >= self._config.max_requests:
                    wait = self._timestamps[0] + self._window - now + SAFETY_BUFFER_SECONDS
                    logger.debug(
                        "rate_limiter.waiting",
                        limiter=self._config.name,
                        wait_seconds=round(wait, 3),
                        in_window=len(self._timestamps),
                    )
                    await self._sleep(wait)
                    waited += wait
                    continue

                if self._min_delay and self._timestamps:
                    since_last = now - self._timestamps[-1]
                    if since_last < self._min_delay:
                        wait = self._min_delay - since_last
                        await self._sleep(wait)
                        waited += wait
                        # No re-check: float rounding can leave since_last just under min_delay
                        now = max(self._clock(), self._timestamps[-1] + self._min_delay)

                self._timestamps.append(now)
                break

        if waited > 0:
            self._observer.rate_limit_wait(self._config.name, waited)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once a slot in the window is available."""
        await self.acquire()
        return await fn()

    def status(self) -> dict[str, Any]:
        """Current window usage, as reported by connector health checks."""
        self._prune(self._clock())
        used = len(self._timestamps)
        return {
            "limiter": self._config.name,
            "max_requests": self._config.max_requests,
            "window_ms": self._config.window_ms,
            "requests_in_window": used,
            "remaining": max(self._config.max_requests - used, 0),
        }
