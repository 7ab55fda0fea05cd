"""
Token-bucket rate limiter: per-provider admission control.

Each provider gets a bucket holding at most `requests_per_minute` tokens,
refilled continuously at rpm / 60 tokens per second. acquire() refills from
elapsed wall-clock time, then waits with asyncio.sleep in bounded polls of
at most `max_wait_seconds` until the cost fits. Waiters re-check the bucket
after every poll; the bucket is only mutated in synchronous sections.

One limiter per provider is shared process-wide through RateLimiterRegistry
(see get_rate_limiters()); tests construct their own registry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import lru_cache
from typing import Awaitable, Callable

from cutlist_intake.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

_POLL_PADDING_SECONDS = 0.1


class TokenBucketRateLimiter:
    """
    Usage::

        limiter = TokenBucketRateLimiter("openai", requests_per_minute=100)
        await limiter.acquire()          # waits if the bucket is empty
        limiter.can_acquire()            # non-blocking check
    """

    def __init__(
        self,
        name: str,
        requests_per_minute: int,
        max_wait_seconds: float = 5.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.name = name
        self._max_tokens = float(requests_per_minute)
        self._refill_rate = requests_per_minute / 60.0     # tokens per second
        self._max_wait = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._tokens = self._max_tokens
        self._last_refill = clock()

    @property
    def refill_rate(self) -> float:
        return self._refill_rate

    @property
    def capacity(self) -> int:
        return int(self._max_tokens)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._max_tokens, self._tokens + elapsed * self._refill_rate)
        self._last_refill = now

    async def acquire(self, cost: float = 1) -> float:
        """
        Take `cost` tokens, waiting for refill if necessary.

        Returns the total seconds spent waiting (0.0 when admitted immediately).
        """
        if cost > self._max_tokens:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self._max_tokens:.0f}")

        waited = 0.0
        self._refill()
        while self._tokens < cost:
            shortfall = cost - self._tokens
            delay = min(shortfall / self._refill_rate + _POLL_PADDING_SECONDS, self._max_wait)
            logger.debug(
                "RateLimiter | provider=%s waiting=%.2fs tokens=%.2f cost=%s",
                self.name, delay, self._tokens, cost,
            )
            await self._sleep(delay)
            waited += delay
            self._refill()

        self._tokens -= cost
        if waited:
            logger.info("RateLimiter | provider=%s admitted after %.2fs", self.name, waited)
        return waited

    def can_acquire(self, cost: float = 1) -> bool:
        self._refill()
        return self._tokens >= cost

    def get_available_tokens(self) -> int:
        self._refill()
        return int(self._tokens)


class RateLimiterRegistry:
    """Lazily creates one limiter per provider name from the configured rpm table."""

    def __init__(
        self,
        cfg: Settings | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cfg = cfg or get_settings()
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, TokenBucketRateLimiter] = {}

    def get(self, provider: str) -> TokenBucketRateLimiter:
        limiter = self._limiters.get(provider)
        if limiter is None:
            limiter = TokenBucketRateLimiter(
                provider,
                requests_per_minute=self._cfg.rpm_for(provider),
                max_wait_seconds=self._cfg.rate_limit_max_wait_seconds,
                clock=self._clock,
                sleep=self._sleep,
            )
            self._limiters[provider] = limiter
        return limiter

    def status(self) -> dict[str, int]:
        return {name: limiter.get_available_tokens() for name, limiter in self._limiters.items()}


@lru_cache(maxsize=1)
def get_rate_limiters() -> RateLimiterRegistry:
    """Process-wide registry so concurrent requests share each provider's real quota."""
    return RateLimiterRegistry(get_settings())
