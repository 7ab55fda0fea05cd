"""
Root conftest.py: Shared fixtures for the extraction pipeline tests

Fixture hierarchy:
  function-scoped : test_settings, manual_clock, limiter_sleep, retry_sleep,
                    rate_limiters, audit_store, payload, make_orchestrator

Environment strategy:
  - No test talks to a real provider. Providers are AsyncMock-backed fakes
    whose `extract` side effects are scripted per test.
  - Time never really passes: rate limiters run on ManualClock and every
    sleep is recorded instead of awaited.
  - Settings are built with `_env_file=None` so a developer's .env cannot
    change thresholds under the tests.

How to run:
  pytest                                        # all tests
  pytest -m unit                                # pure component tests
  pytest -m orchestrator                        # end-to-end lifecycle tests
  pytest backend/tests/unit/test_chunking.py    # single file
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable
from unittest.mock import AsyncMock, MagicMock

import pytest

from cutlist_intake.core.config import Settings
from cutlist_intake.llm.providers import (
    ExtractionPayload,
    ProviderChain,
    ProviderHandle,
    ProviderResponse,
    TokenUsage,
)
from cutlist_intake.llm.rate_limiter import RateLimiterRegistry
from cutlist_intake.observability.audit import AuditStore
from cutlist_intake.schemas.extraction import InputKind


# ─────────────────────────────────────────────────────────────────────────────
# Time doubles
# ─────────────────────────────────────────────────────────────────────────────

class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep replacement. Records every delay; optionally advances a clock."""

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


# ─────────────────────────────────────────────────────────────────────────────
# Provider doubles
# ─────────────────────────────────────────────────────────────────────────────

_RANGE = re.compile(r"items numbered (\d+) through (\d+)")


def make_item(row: int, **overrides: Any) -> dict[str, Any]:
    """One wire-shape item. Lengths differ per row so items never collide on merge."""
    item = {
        "row": row,
        "label": f"Part {row}",
        "length": 300 + row,
        "width": 200,
        "thickness": 18,
        "quantity": 1,
        "material": "white melamine",
        "confidence": 0.95,
    }
    item.update(overrides)
    return item


def items_json(
    rows: Iterable[int],
    *,
    drop_width_on_last: bool = False,
    **overrides: Any,
) -> str:
    items = [make_item(row, **overrides) for row in rows]
    if drop_width_on_last and items:
        items[-1].pop("width")
    return json.dumps({"items": items})


def response(text: str, tokens: tuple[int, int] | None = None) -> ProviderResponse:
    usage = TokenUsage(*tokens) if tokens else None
    return ProviderResponse(raw_response_text=text, tokens_used=usage)


def scripted_provider(*outcomes: ProviderResponse | BaseException) -> MagicMock:
    """Each extract() call consumes the next outcome; exceptions are raised."""
    provider = MagicMock()
    provider.extract = AsyncMock(side_effect=list(outcomes))
    return provider


def routed_provider(handler: Callable[..., ProviderResponse]) -> MagicMock:
    """extract(payload, prompt) is answered by handler(payload, prompt)."""
    provider = MagicMock()
    provider.extract = AsyncMock(side_effect=handler)
    return provider


def requested_range(prompt: str | None) -> tuple[int, int] | None:
    match = _RANGE.search(prompt or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def range_handler(single_pass_text: str) -> Callable[..., ProviderResponse]:
    """Chunk prompts get exactly the rows they ask for; anything else gets `single_pass_text`."""
    def _handle(payload: ExtractionPayload, prompt: str | None = None) -> ProviderResponse:
        bounds = requested_range(prompt)
        if bounds is None:
            return response(single_pass_text)
        start, end = bounds
        return response(items_json(range(start, end + 1)))
    return _handle


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def limiter_sleep(manual_clock) -> SleepRecorder:
    """Rate-limiter waits advance the manual clock, so buckets refill."""
    return SleepRecorder(manual_clock)


@pytest.fixture
def retry_sleep() -> SleepRecorder:
    """Retry backoff is recorded only; it does not refill any bucket."""
    return SleepRecorder()


@pytest.fixture
def rate_limiters(test_settings, manual_clock, limiter_sleep) -> RateLimiterRegistry:
    return RateLimiterRegistry(test_settings, clock=manual_clock, sleep=limiter_sleep)


@pytest.fixture
def audit_store() -> AuditStore:
    return AuditStore(capacity=100)


@pytest.fixture
def payload() -> ExtractionPayload:
    return ExtractionPayload("aGVsbG8gY3V0bGlzdA==", InputKind.IMAGE, "image/png")


@pytest.fixture
def make_orchestrator(test_settings, rate_limiters, audit_store, retry_sleep):
    """Factory: build an orchestrator over `(name, client)` pairs, in chain order."""
    def _build(*providers: tuple[str, Any], cache=None, cfg: Settings | None = None):
        from cutlist_intake.services.orchestrator import ExtractionOrchestrator
        chain = ProviderChain([
            ProviderHandle(name=name, client=client, model=f"{name}-test")
            for name, client in providers
        ])
        return ExtractionOrchestrator(
            chain,
            rate_limiters=rate_limiters,
            audit_store=audit_store,
            cache=cache,
            cfg=cfg or test_settings,
            sleep=retry_sleep,
            rng=lambda: 0.0,
        )
    return _build
