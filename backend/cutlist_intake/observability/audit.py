"""
Extraction Audit Trail: Bounded In-Memory Store

Every extract() call produces exactly one immutable AuditEntry:

    builder = store.builder(request_id)
    builder.set_input(...).set_provider("openai", "gpt-4o").set_strategy(...)
    ...
    entry = builder.finalize()      # stamps duration, appends once

Storage:
  A deque(maxlen=capacity) ring buffer; the oldest entry is evicted first.
  Nothing is persisted. The store is constructed explicitly and injected
  into the orchestrator, so every test gets a fresh one.

Aggregates (calculate_accuracy_metrics):
  day / week / month windows (1 / 7 / 30 days back from "now") with
  success/failure counts, averages, truncation/fallback/review/retry rates,
  a per-provider breakdown and an error-type histogram keyed by the text
  before the first ':' of each error.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from cutlist_intake.schemas.extraction import (
    ExtractionStrategy,
    InputDescriptor,
    InputKind,
    QualityMetrics,
    ReviewFlag,
    ReviewSeverity,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditPeriod(str, Enum):
    DAY   = "day"
    WEEK  = "week"
    MONTH = "month"


_PERIOD_LENGTH = {
    AuditPeriod.DAY:   timedelta(days=1),
    AuditPeriod.WEEK:  timedelta(days=7),
    AuditPeriod.MONTH: timedelta(days=30),
}


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class AuditInput(_Frozen):
    kind:         InputKind = InputKind.IMAGE
    file_name:    str | None = None
    file_size_kb: int = 0
    page_count:   int | None = None


class AuditProcessing(_Frozen):
    provider:           str | None = None
    model:              str | None = None
    strategy:           ExtractionStrategy = ExtractionStrategy.SINGLE_PASS
    prompt_tokens:      int | None = None
    completion_tokens:  int | None = None
    processing_time_ms: float = 0.0
    retry_count:        int = 0
    used_fallback:      bool = False


class AuditOutput(_Frozen):
    success:           bool = False
    items_extracted:   int = 0
    sections_detected: tuple[str, ...] = ()
    avg_confidence:    float = 0.0
    quality_score:     int = 0


class AuditVerification(_Frozen):
    estimated_items:     int | None = None
    truncation_detected: bool = False
    validation_passed:   bool = False
    review_flags_count:  int = 0
    high_severity_flags: int = 0
    needs_review:        bool = False
    review_reason:       str | None = None


class AuditEntry(_Frozen):
    id:              str
    request_id:      str
    timestamp:       datetime
    organization_id: str | None = None

    input:        AuditInput
    processing:   AuditProcessing
    output:       AuditOutput
    verification: AuditVerification

    errors:   tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class AuditBuilder:
    """
    Mutable accumulator threaded through one request. Setters return self.
    finalize() is idempotent: the first call appends, later calls return
    the same entry without touching the store.
    """

    def __init__(
        self,
        request_id: str,
        store: "AuditStore | None" = None,
        clock: Clock = _utcnow,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.request_id = request_id
        self._store = store
        self._clock = clock
        self._timer = timer
        self._started = timer()

        self._organization_id: str | None = None
        self._input = AuditInput()
        self._processing: dict = {}
        self._output: dict = {}
        self._verification: dict = {}
        self._retry_count = 0
        self._errors: list[str] = []
        self._warnings: list[str] = []
        self._entry: AuditEntry | None = None

    @property
    def finalized(self) -> bool:
        return self._entry is not None

    @property
    def retry_count(self) -> int:
        return self._retry_count

    def set_organization(self, organization_id: str | None) -> "AuditBuilder":
        self._organization_id = organization_id
        return self

    def set_input(self, descriptor: InputDescriptor) -> "AuditBuilder":
        self._input = AuditInput(
            kind=descriptor.kind,
            file_name=descriptor.file_name,
            file_size_kb=descriptor.size_kb,
            page_count=descriptor.page_count,
        )
        return self

    def set_provider(self, provider: str, model: str | None = None) -> "AuditBuilder":
        self._processing["provider"] = provider
        self._processing["model"] = model
        return self

    def set_strategy(self, strategy: ExtractionStrategy) -> "AuditBuilder":
        self._processing["strategy"] = strategy
        return self

    def set_token_usage(self, prompt_tokens: int, completion_tokens: int) -> "AuditBuilder":
        """Accumulates across calls (estimate + extraction + chunks)."""
        self._processing["prompt_tokens"] = self._processing.get("prompt_tokens", 0) + prompt_tokens
        self._processing["completion_tokens"] = (
            self._processing.get("completion_tokens", 0) + completion_tokens
        )
        return self

    def increment_retry(self) -> "AuditBuilder":
        self._retry_count += 1
        return self

    def set_used_fallback(self, used: bool) -> "AuditBuilder":
        self._processing["used_fallback"] = used
        return self

    def set_output(
        self,
        *,
        success: bool,
        items_extracted: int,
        sections_detected: list[str] | None = None,
    ) -> "AuditBuilder":
        self._output.update(
            success=success,
            items_extracted=items_extracted,
            sections_detected=tuple(sections_detected or ()),
        )
        return self

    def set_quality_metrics(self, metrics: QualityMetrics) -> "AuditBuilder":
        self._output["avg_confidence"] = metrics.avg_confidence
        self._output["quality_score"] = metrics.quality_score
        return self

    def set_verification(self, **fields) -> "AuditBuilder":
        self._verification.update(fields)
        return self

    def set_review_flags(self, flags: list[ReviewFlag]) -> "AuditBuilder":
        self._verification["review_flags_count"] = len(flags)
        self._verification["high_severity_flags"] = sum(
            1 for f in flags if f.severity == ReviewSeverity.HIGH
        )
        return self

    def add_error(self, error: str) -> "AuditBuilder":
        self._errors.append(error)
        return self

    def add_warning(self, warning: str) -> "AuditBuilder":
        self._warnings.append(warning)
        return self

    def finalize(self, processing_time_ms: float | None = None) -> AuditEntry:
        if self._entry is not None:
            return self._entry

        elapsed = (
            processing_time_ms
            if processing_time_ms is not None
            else (self._timer() - self._started) * 1000
        )
        self._entry = AuditEntry(
            id=f"audit-{uuid.uuid4().hex[:12]}",
            request_id=self.request_id,
            timestamp=self._clock(),
            organization_id=self._organization_id,
            input=self._input,
            processing=AuditProcessing(
                **self._processing,
                processing_time_ms=elapsed,
                retry_count=self._retry_count,
            ),
            output=AuditOutput(**self._output),
            verification=AuditVerification(**self._verification),
            errors=tuple(self._errors),
            warnings=tuple(self._warnings),
        )
        if self._store is not None:
            self._store.append(self._entry)
        return self._entry


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class ProviderStats(BaseModel):
    count:       int = 0
    avg_time_ms: float = 0.0


class AccuracyMetrics(BaseModel):
    period:     AuditPeriod
    start_date: datetime
    end_date:   datetime

    total_extractions:      int = 0
    successful_extractions: int = 0
    failed_extractions:     int = 0

    avg_items_per_extraction: float = 0.0
    avg_confidence:           float = 0.0
    avg_quality_score:        float = 0.0
    avg_processing_time_ms:   float = 0.0

    truncation_rate: float = 0.0
    fallback_rate:   float = 0.0
    review_rate:     float = 0.0
    retry_rate:      float = 0.0

    provider_breakdown: dict[str, ProviderStats] = Field(default_factory=dict)
    error_breakdown:    dict[str, int] = Field(default_factory=dict)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AuditStore:
    """
    Usage::

        store = AuditStore(capacity=1000)
        store.get_recent(20)
        store.get_by_request_id(rid)
        store.calculate_accuracy_metrics("week")
    """

    def __init__(self, capacity: int = 1_000, clock: Clock = _utcnow) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)
        self._clock = clock

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def builder(self, request_id: str) -> AuditBuilder:
        return AuditBuilder(request_id, store=self, clock=self._clock)

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)
        logger.info(
            "Audit | request_id=%s success=%s items=%d quality=%d time_ms=%.0f needs_review=%s",
            entry.request_id,
            entry.output.success,
            entry.output.items_extracted,
            entry.output.quality_score,
            entry.processing.processing_time_ms,
            entry.verification.needs_review,
        )

    def get_recent(self, limit: int = 100) -> list[AuditEntry]:
        """Most recent `limit` entries, oldest first."""
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def get_by_request_id(self, request_id: str) -> AuditEntry | None:
        for entry in self._entries:
            if entry.request_id == request_id:
                return entry
        return None

    def clear(self) -> None:
        self._entries.clear()

    def calculate_accuracy_metrics(self, period: AuditPeriod | str = AuditPeriod.DAY) -> AccuracyMetrics:
        period = AuditPeriod(period)
        now = self._clock()
        start = now - _PERIOD_LENGTH[period]
        entries = [e for e in self._entries if e.timestamp >= start]

        metrics = AccuracyMetrics(period=period, start_date=start, end_date=now)
        if not entries:
            return metrics

        total = len(entries)
        successful = [e for e in entries if e.output.success]

        by_provider: dict[str, list[float]] = {}
        for entry in entries:
            if entry.processing.provider:
                by_provider.setdefault(entry.processing.provider, []).append(
                    entry.processing.processing_time_ms
                )

        errors: Counter[str] = Counter()
        for entry in entries:
            for error in entry.errors:
                errors[error.split(":")[0].strip() or "Unknown"] += 1

        metrics.total_extractions = total
        metrics.successful_extractions = len(successful)
        metrics.failed_extractions = total - len(successful)
        metrics.avg_items_per_extraction = _mean([e.output.items_extracted for e in entries])
        metrics.avg_confidence = _mean([e.output.avg_confidence for e in successful])
        metrics.avg_quality_score = _mean([e.output.quality_score for e in successful])
        metrics.avg_processing_time_ms = _mean([e.processing.processing_time_ms for e in entries])
        metrics.truncation_rate = sum(e.verification.truncation_detected for e in entries) / total
        metrics.fallback_rate = sum(e.processing.used_fallback for e in entries) / total
        metrics.review_rate = sum(e.verification.needs_review for e in entries) / total
        metrics.retry_rate = sum(e.processing.retry_count > 0 for e in entries) / total
        metrics.provider_breakdown = {
            name: ProviderStats(count=len(times), avg_time_ms=_mean(times))
            for name, times in by_provider.items()
        }
        metrics.error_breakdown = dict(errors)
        return metrics
