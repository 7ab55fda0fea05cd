"""
Retry with exponential backoff and jitter.

    outcome = await with_retry(
        lambda: provider.extract(payload),
        RetryPolicy(max_retries=3, base_delay_ms=1000),
    )
    outcome.value, outcome.retries, outcome.delays_ms

Delay before retry n (0-based): min(base * 2**n + jitter, max_delay), where
jitter is uniform in [0, 30%] of the exponential term. The error that ends
the loop (non-retryable, or retries exhausted) is re-raised unchanged so
the caller can classify it again.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, TypeVar

from cutlist_intake.core.exceptions import ErrorCategory, classify_error, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JITTER_FRACTION = 0.3


@dataclass
class RetryPolicy:
    max_retries:   int = 3
    base_delay_ms: int = 1_000
    max_delay_ms:  int = 30_000
    retry_on:      Callable[[ErrorCategory], bool] = is_retryable


@dataclass
class RetryOutcome(Generic[T]):
    value:     T
    attempts:  int
    delays_ms: list[float] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return self.attempts - 1

    @property
    def total_delay_ms(self) -> float:
        return sum(self.delays_ms)


def compute_backoff_ms(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    exponential = policy.base_delay_ms * (2 ** attempt)
    jitter = rng() * _JITTER_FRACTION * exponential
    return min(exponential + jitter, policy.max_delay_ms)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    on_retry: Callable[[int, BaseException, ErrorCategory], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> RetryOutcome[T]:
    """
    Invoke `operation` until it succeeds, the error is not retryable, or
    `policy.max_retries` retries have been spent.

    on_retry(attempt, error, category) fires once per scheduled retry,
    before the backoff sleep.
    """
    policy = policy or RetryPolicy()
    delays: list[float] = []
    attempt = 0

    while True:
        try:
            value = await operation()
            return RetryOutcome(value=value, attempts=attempt + 1, delays_ms=delays)
        except Exception as exc:
            category = classify_error(exc)

            if not policy.retry_on(category):
                logger.debug("Retry | not retrying category=%s error=%s", category.value, exc)
                raise

            if attempt >= policy.max_retries:
                logger.error(
                    "Retry | all retries exhausted attempts=%d category=%s error=%s",
                    attempt + 1, category.value, exc,
                )
                raise

            delay_ms = compute_backoff_ms(attempt, policy, rng)
            logger.warning(
                "Retry | attempt %d/%d failed, retrying in %.0fms category=%s error=%s",
                attempt + 1, policy.max_retries, delay_ms, category.value, exc,
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc, category)
            delays.append(delay_ms)
            await sleep(delay_ms / 1000.0)
            attempt += 1
