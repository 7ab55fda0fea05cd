"""
Unit Tests: TokenBucketRateLimiter / RateLimiterRegistry

All tests run on ManualClock; waits are recorded by SleepRecorder and
advance the clock by exactly the requested delay.

Coverage targets:
  ✅ Full bucket   → immediate admission, no sleep
  ✅ Empty bucket  → one poll of shortfall / refill_rate + 0.1s
  ✅ Slow refill   → repeated polls, each capped at max_wait_seconds
  ✅ Refill        → proportional to elapsed time, never above capacity
  ✅ Cost > capacity / rpm <= 0 → ValueError
  ✅ Registry      → one limiter per provider, rpm from settings
"""

from __future__ import annotations

import pytest

from cutlist_intake.llm.rate_limiter import RateLimiterRegistry, TokenBucketRateLimiter
from tests.conftest import ManualClock, SleepRecorder


@pytest.fixture
def make_limiter(manual_clock, limiter_sleep):
    def _build(rpm: int, max_wait: float = 5.0) -> TokenBucketRateLimiter:
        return TokenBucketRateLimiter(
            "openai", rpm, max_wait_seconds=max_wait, clock=manual_clock, sleep=limiter_sleep
        )
    return _build


@pytest.mark.unit
class TestTokenBucketRateLimiter:

    async def test_full_bucket_admits_without_waiting(self, make_limiter, limiter_sleep):
        limiter = make_limiter(rpm=2)

        assert await limiter.acquire() == 0.0
        assert await limiter.acquire() == 0.0
        assert limiter_sleep.calls == []
        assert limiter.get_available_tokens() == 0

    async def test_empty_bucket_waits_for_shortfall_plus_padding(self, make_limiter, limiter_sleep):
        limiter = make_limiter(rpm=60)
        for _ in range(60):
            await limiter.acquire()

        waited = await limiter.acquire()

        # 60 rpm refills one token per second: 1s shortfall + 0.1s padding
        assert limiter_sleep.calls == [pytest.approx(1.1)]
        assert waited == pytest.approx(1.1)

    async def test_slow_refill_polls_in_bounded_steps(self, make_limiter, limiter_sleep):
        limiter = make_limiter(rpm=2, max_wait=5.0)
        await limiter.acquire()
        await limiter.acquire()

        waited = await limiter.acquire()

        # one token takes 30s at 2 rpm; no single poll may exceed 5s
        assert len(limiter_sleep.calls) >= 6
        assert max(limiter_sleep.calls) <= 5.0
        assert waited >= 29.999
        assert waited == pytest.approx(limiter_sleep.total)

    async def test_tokens_refill_with_elapsed_time(self, make_limiter, manual_clock):
        limiter = make_limiter(rpm=60)
        for _ in range(60):
            await limiter.acquire()
        assert limiter.can_acquire() is False

        manual_clock.advance(30)

        assert limiter.get_available_tokens() == 30
        assert limiter.can_acquire() is True

    async def test_tokens_never_exceed_capacity(self, make_limiter, manual_clock):
        limiter = make_limiter(rpm=60)
        await limiter.acquire()

        manual_clock.advance(10_000)

        assert limiter.get_available_tokens() == 60
        assert limiter.capacity == 60

    async def test_multi_token_cost_is_deducted(self, make_limiter):
        limiter = make_limiter(rpm=10)

        await limiter.acquire(cost=4)

        assert limiter.get_available_tokens() == 6

    async def test_cost_above_capacity_raises(self, make_limiter):
        limiter = make_limiter(rpm=5)

        with pytest.raises(ValueError, match="exceeds bucket capacity"):
            await limiter.acquire(cost=6)

    @pytest.mark.parametrize("rpm", [0, -10])
    def test_non_positive_rpm_raises(self, rpm):
        with pytest.raises(ValueError):
            TokenBucketRateLimiter("openai", rpm)

    def test_refill_rate_is_per_second(self):
        assert TokenBucketRateLimiter("openai", 120).refill_rate == pytest.approx(2.0)


@pytest.mark.unit
class TestRateLimiterRegistry:

    def test_same_provider_shares_one_limiter(self, test_settings):
        registry = RateLimiterRegistry(test_settings, clock=ManualClock(), sleep=SleepRecorder())

        assert registry.get("openai") is registry.get("openai")
        assert registry.get("openai") is not registry.get("aws_bedrock")

    def test_capacity_comes_from_configured_rpm(self, test_settings):
        registry = RateLimiterRegistry(test_settings, clock=ManualClock(), sleep=SleepRecorder())

        assert registry.get("aws_bedrock").capacity == 50
        assert registry.get("openai").capacity == 100

    def test_unknown_provider_uses_default_rpm(self, test_settings):
        registry = RateLimiterRegistry(test_settings, clock=ManualClock(), sleep=SleepRecorder())

        assert registry.get("mistral").capacity == test_settings.rate_limit_default_rpm

    async def test_status_reports_available_tokens(self, rate_limiters):
        await rate_limiters.get("openai").acquire()

        assert rate_limiters.status() == {"openai": 99}
