"""
Extraction Orchestrator
═══════════════════════

One call of extract() runs this state machine:

  ┌──────────────┐  cache hit  ┌──────────────────────────────────────┐
  │ cache lookup │────────────►│ audited, returned with from_cache    │
  └──────┬───────┘             └──────────────────────────────────────┘
         ▼
  ┌──────────────┐  count-only provider call; default on failure
  │  Estimating  │
  └──────┬───────┘
         ▼
  ┌──────────────┐  should_chunk_document()
  │   Deciding   │──────────────────────────┐
  └──────┬───────┘                          │ chunk
         ▼ single pass                      ▼
  ┌──────────────┐  truncated   ┌─────────────────────────┐
  │ Single pass  │─────────────►│ Chunked / segmented     │
  │ + truncation │  (escalate)  │ sequential, per-chunk   │
  │   detection  │◄─────────────│ failures become warnings│
  └──────┬───────┘  keep larger └───────────┬─────────────┘
         ▼                                  ▼
  ┌────────────────────────────────────────────────────────┐
  │ Validating: strict filter → quality → review flags     │
  └──────────────────────────┬─────────────────────────────┘
                             ▼
  ┌────────────────────────────────────────────────────────┐
  │ Finalizing: audit entry appended once → ExtractionResult│
  └────────────────────────────────────────────────────────┘

Every provider call (estimate, single pass, each chunk) goes through the
same path: ProviderChain order → per-provider RetryPolicy → the provider's
token bucket acquired on every attempt. A provider whose retries are spent,
or that fails with a non-retryable error (content filter included), hands
over to the next provider in the chain.

extract() never raises. Anything that escapes is converted once, at the
top, into a failed result with needs_review=True.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError

from cutlist_intake.core.config import Settings, get_settings
from cutlist_intake.core.exceptions import AllProvidersFailedError, ErrorCategory, classify_error
from cutlist_intake.core.logging import log_event
from cutlist_intake.llm.prompts import EXTRACTION_PROMPT, ITEM_COUNT_PROMPT
from cutlist_intake.llm.providers import ExtractionPayload, ProviderChain, ProviderHandle, ProviderResponse
from cutlist_intake.llm.rate_limiter import RateLimiterRegistry, get_rate_limiters
from cutlist_intake.llm.retry import RetryPolicy, with_retry
from cutlist_intake.observability.audit import AuditBuilder, AuditStore
from cutlist_intake.observability.tracing import traced
from cutlist_intake.processing.chunking import (
    ChunkingStrategy,
    ChunkResult,
    PreviousAttempt,
    build_chunk_prompt,
    build_section_prompt,
    calculate_chunk_boundaries,
    merge_chunk_results,
    should_chunk_document,
)
from cutlist_intake.processing.parsing import normalize_items, parse_item_count_estimate
from cutlist_intake.processing.truncation import TruncationDetector
from cutlist_intake.processing.validation import (
    ValidationResult,
    apply_strict_validation,
    calculate_quality_metrics,
    generate_review_flags,
    needs_review,
    validate_response,
)
from cutlist_intake.schemas.extraction import (
    ExtractedItem,
    ExtractionOptions,
    ExtractionResult,
    ExtractionStrategy,
    InputDescriptor,
    ReviewDecision,
)
from cutlist_intake.services.cache import ExtractionCache, cache_key

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-request state
# ---------------------------------------------------------------------------

@dataclass
class _RequestContext:
    request_id: str
    payload:    ExtractionPayload
    options:    ExtractionOptions
    audit:      AuditBuilder
    started:    float

    estimated_items:  int | None = None
    sections:         list[str] = field(default_factory=list)
    retry_count:      int = 0
    truncation_seen:  bool = False
    provider:         str | None = None
    warnings:         list[str] = field(default_factory=list)


@dataclass
class _ChainCall:
    response:      ProviderResponse
    handle:        ProviderHandle
    used_fallback: bool


@dataclass
class _Attempt:
    items:             list[ExtractedItem]
    strategy:          ExtractionStrategy
    success:           bool = True
    provider:          str | None = None
    model:             str | None = None
    used_fallback:     bool = False
    truncated:         bool = False
    validation_passed: bool = True
    chunk_count:       int | None = None
    sections:          list[str] = field(default_factory=list)
    warnings:          list[str] = field(default_factory=list)
    errors:            list[str] = field(default_factory=list)


class ExtractionOrchestrator:
    """
    Usage::

        orchestrator = ExtractionOrchestrator(build_default_chain(), audit_store=AuditStore())
        result = await orchestrator.extract(
            ExtractionPayload(image_b64, InputKind.IMAGE, "image/png"),
            {"organizationId": "org-1", "fileName": "kitchen.png"},
        )

    All collaborators are injected; nothing is looked up from module state
    except the process-wide rate limiters when none are passed.
    """

    def __init__(
        self,
        providers: ProviderChain,
        *,
        rate_limiters: RateLimiterRegistry | None = None,
        audit_store: AuditStore | None = None,
        cache: ExtractionCache | None = None,
        detector: TruncationDetector | None = None,
        cfg: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._cfg = cfg or get_settings()
        self._providers = providers
        self._rate_limiters = rate_limiters or get_rate_limiters()
        self._audit_store = audit_store if audit_store is not None else AuditStore(self._cfg.audit_capacity)
        self._cache = cache
        self._detector = detector or TruncationDetector()
        self._sleep = sleep
        self._rng = rng

    @property
    def audit_store(self) -> AuditStore:
        return self._audit_store

    # -----------------------------------------------------------------------
    # Public entry point
    # -----------------------------------------------------------------------

    @traced("extraction.extract")
    async def extract(
        self,
        payload: ExtractionPayload,
        options: ExtractionOptions | Mapping[str, Any] | None = None,
        descriptor: InputDescriptor | None = None,
    ) -> ExtractionResult:
        request_id = uuid.uuid4().hex
        started = time.perf_counter()
        try:
            opts = (
                options if isinstance(options, ExtractionOptions)
                else ExtractionOptions.model_validate(dict(options or {}))
            )
        except ValidationError as exc:
            opts = ExtractionOptions()
            logger.warning("Orchestrator | invalid options ignored request_id=%s error=%s", request_id, exc)

        audit = (
            self._audit_store.builder(request_id)
            if opts.enable_audit
            else AuditBuilder(request_id, store=None)
        )
        ctx = _RequestContext(request_id, payload, opts, audit, started)

        log_event(
            logger, logging.INFO, "extraction.started",
            request_id=request_id,
            preferred_provider=opts.preferred_provider or self._providers.primary.name,
            enable_fallback=opts.enable_fallback,
            enable_chunking=opts.enable_chunking,
        )

        try:
            result = await self._run(ctx, descriptor)
        except Exception as exc:
            result = self._failed_result(ctx, exc)

        return result

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def _run(self, ctx: _RequestContext, descriptor: InputDescriptor | None) -> ExtractionResult:
        opts = ctx.options
        descriptor = descriptor or InputDescriptor(
            kind=opts.file_type or ctx.payload.kind,
            file_name=opts.file_name,
            size_bytes=ctx.payload.size_bytes,
        )
        ctx.audit.set_organization(opts.organization_id).set_input(descriptor)

        key = None
        if self._cache is not None:
            key = cache_key(ctx.payload, opts)
            cached = self._cache.get(key)
            if cached is not None:
                return self._serve_cached(ctx, cached)

        # Estimating
        if opts.estimated_items:
            ctx.estimated_items = opts.estimated_items
        elif opts.enable_chunking:
            ctx.estimated_items = await self._estimate(ctx)
        ctx.audit.set_verification(estimated_items=ctx.estimated_items)

        # Deciding
        previous = PreviousAttempt(0, truncated=True, avg_confidence=0.0) if opts.force_chunking else None
        decision = should_chunk_document(ctx.estimated_items or 0, previous, self._cfg)
        logger.info(
            "Orchestrator | request_id=%s decision chunk=%s strategy=%s reason=%s",
            ctx.request_id, decision.should_chunk, decision.strategy.value, decision.reason,
        )

        # Extracting
        if decision.should_chunk and opts.enable_chunking:
            attempt = await self._chunked(ctx, decision.estimated_items, decision.strategy)
        else:
            attempt = await self._single_pass(ctx)
            if attempt.truncated and opts.enable_chunking:
                attempt = await self._escalate(ctx, attempt)

        result = self._finish(ctx, attempt)

        if key is not None and self._cache is not None and self._cache.put(key, result):
            logger.debug("Orchestrator | cached request_id=%s", ctx.request_id)
        return result

    @traced("extraction.estimate")
    async def _estimate(self, ctx: _RequestContext) -> int:
        """One cheap count-only call to the head of the chain. No retry, no fallback."""
        default = self._cfg.estimate_default_items
        handle = self._providers.ordered(ctx.options.preferred_provider, enable_fallback=False)[0]
        try:
            await self._rate_limiters.get(handle.name).acquire()
            response = await handle.client.extract(ctx.payload, ITEM_COUNT_PROMPT)
        except Exception as exc:
            message = f"Item count estimation failed ({exc}); assuming {default} items"
            logger.warning("Orchestrator | request_id=%s %s", ctx.request_id, message)
            ctx.warnings.append(message)
            return default

        self._record_tokens(ctx, response)
        estimate = parse_item_count_estimate(response.raw_response_text)
        if estimate.estimated_count <= 0:
            message = f"Item count estimation returned no count; assuming {default} items"
            ctx.warnings.append(message)
            return default

        ctx.sections = estimate.sections
        logger.info(
            "Orchestrator | request_id=%s estimated_items=%d sections=%s confidence=%.1f",
            ctx.request_id, estimate.estimated_count, estimate.sections, estimate.confidence,
        )
        return estimate.estimated_count

    @traced("extraction.single_pass")
    async def _single_pass(self, ctx: _RequestContext) -> _Attempt:
        call = await self._call_chain(ctx, None, self._max_retries(ctx))
        raw = self._raw_text(call.response)
        validation = self._validate(raw)
        truncation = self._detector.detect(raw, ctx.options.estimated_items)

        items = validation.items
        warnings = list(validation.warnings)
        if truncation.is_truncated:
            ctx.truncation_seen = True
            warnings.append(f"Truncation detected: {truncation.reason}")
            recovered = self._detector.recover(raw)
            if len(recovered) > len(items):
                items, notes = normalize_items(recovered, self._cfg)
                warnings.extend(notes)
                warnings.append(f"Recovered {len(items)} items from truncated response")

        return _Attempt(
            items=items,
            strategy=ExtractionStrategy.FALLBACK if call.used_fallback else ExtractionStrategy.SINGLE_PASS,
            success=validation.success or bool(items),
            provider=call.handle.name,
            model=call.handle.model,
            used_fallback=call.used_fallback,
            truncated=truncation.is_truncated,
            validation_passed=validation.success,
            warnings=warnings,
            errors=[] if items else list(validation.errors),
        )

    async def _escalate(self, ctx: _RequestContext, single: _Attempt) -> _Attempt:
        estimate = ctx.estimated_items or len(single.items) * 2 or self._cfg.estimate_default_items
        log_event(
            logger, logging.WARNING, "extraction.escalating",
            request_id=ctx.request_id, items=len(single.items), estimate=estimate,
        )
        chunked = await self._chunked(ctx, estimate, ChunkingStrategy.MULTI_PASS)

        if len(chunked.items) >= len(single.items):
            chunked.warnings.insert(
                0,
                f"Single-pass result was truncated ({len(single.items)} items); "
                f"superseded by chunked extraction ({len(chunked.items)} items)",
            )
            chunked.warnings = single.warnings + chunked.warnings
            chunked.used_fallback = chunked.used_fallback or single.used_fallback
            return chunked

        single.warnings.append(
            f"Chunked extraction found fewer items ({len(chunked.items)}); "
            f"keeping truncated single-pass result ({len(single.items)} items)"
        )
        single.warnings.extend(chunked.warnings)
        return single

    @traced("extraction.chunked")
    async def _chunked(self, ctx: _RequestContext, estimated_items: int, strategy: ChunkingStrategy) -> _Attempt:
        if strategy == ChunkingStrategy.SECTIONS and ctx.sections:
            plan = [(None, section, build_section_prompt(section)) for section in ctx.sections]
            tag = ExtractionStrategy.SEGMENTED
        else:
            boundaries = calculate_chunk_boundaries(estimated_items, self._cfg.chunk_max_items_per_chunk)
            plan = [
                (boundary, None, build_chunk_prompt(index, len(boundaries), boundary))
                for index, boundary in enumerate(boundaries)
            ]
            tag = ExtractionStrategy.CHUNKED

        logger.info(
            "Orchestrator | request_id=%s chunked start estimate=%d chunks=%d strategy=%s",
            ctx.request_id, estimated_items, len(plan), tag.value,
        )

        chunks: list[ChunkResult] = []
        warnings: list[str] = []
        provider = model = None
        used_fallback = False

        for index, (boundary, section, scope) in enumerate(plan):
            prompt = f"{EXTRACTION_PROMPT}\n\n{scope}"
            try:
                call = await self._call_chain(ctx, prompt, self._cfg.chunk_max_retries)
                validation = self._validate(self._raw_text(call.response))
            except Exception as exc:
                message = f"Chunk {index + 1} failed: {exc}"
                warnings.append(message)
                logger.warning("Orchestrator | request_id=%s %s", ctx.request_id, message)
                continue

            if not validation.success:
                warnings.extend(f"Chunk {index + 1}: {error}" for error in validation.errors)
            chunks.append(ChunkResult(index, validation.items, boundary=boundary, section=section))
            warnings.extend(validation.warnings)
            provider, model = call.handle.name, call.handle.model
            used_fallback = used_fallback or call.used_fallback
            logger.debug(
                "Orchestrator | request_id=%s chunk %d/%d items=%d",
                ctx.request_id, index + 1, len(plan), len(validation.items),
            )

        merged = merge_chunk_results(chunks)
        if merged.duplicates_removed:
            warnings.append(f"Removed {merged.duplicates_removed} duplicate items across chunks")
        errors: list[str] = []
        if not chunks:
            warnings.append("All chunks failed")
            errors.append("All chunks failed")

        return _Attempt(
            items=merged.items,
            strategy=tag,
            success=bool(merged.items),
            provider=provider,
            model=model,
            used_fallback=used_fallback,
            chunk_count=len(plan),
            sections=merged.sections_processed,
            warnings=warnings,
            errors=errors,
        )

    # -----------------------------------------------------------------------
    # Provider chain
    # -----------------------------------------------------------------------

    async def _call_chain(self, ctx: _RequestContext, prompt: str | None, max_retries: int) -> _ChainCall:
        opts = ctx.options
        policy = RetryPolicy(
            max_retries=max_retries,
            base_delay_ms=opts.retry_delay_ms if opts.retry_delay_ms is not None else self._cfg.retry_base_delay_ms,
            max_delay_ms=self._cfg.retry_max_delay_ms,
        )

        def on_retry(attempt: int, exc: BaseException, category: ErrorCategory) -> None:
            ctx.retry_count += 1
            ctx.audit.increment_retry()

        errors: list[str] = []
        handles = self._providers.ordered(opts.preferred_provider, opts.enable_fallback)
        for position, handle in enumerate(handles):
            limiter = self._rate_limiters.get(handle.name)

            async def attempt(handle: ProviderHandle = handle, limiter=limiter) -> ProviderResponse:
                await limiter.acquire()
                return await handle.client.extract(ctx.payload, prompt)

            try:
                outcome = await with_retry(attempt, policy, on_retry=on_retry, sleep=self._sleep, rng=self._rng)
            except Exception as exc:
                category = classify_error(exc)
                errors.append(f"{category.value}: {handle.name}: {exc}")
                logger.warning(
                    "Orchestrator | request_id=%s provider=%s failed category=%s error=%s",
                    ctx.request_id, handle.name, category.value, exc,
                )
                continue

            if position > 0:
                log_event(
                    logger, logging.WARNING, "extraction.fallback_used",
                    request_id=ctx.request_id, provider=handle.name, failed=len(errors),
                )
            ctx.provider = handle.name
            self._record_tokens(ctx, outcome.value)
            return _ChainCall(outcome.value, handle, used_fallback=position > 0)

        raise AllProvidersFailedError(errors)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _max_retries(self, ctx: _RequestContext) -> int:
        if ctx.options.max_retries is not None:
            return ctx.options.max_retries
        return self._cfg.retry_max_retries

    @staticmethod
    def _raw_text(response: ProviderResponse) -> str:
        if response.raw_response_text.strip():
            return response.raw_response_text
        return json.dumps({"items": response.items})

    def _validate(self, raw: str) -> ValidationResult:
        return validate_response(raw, self._cfg)

    @staticmethod
    def _record_tokens(ctx: _RequestContext, response: ProviderResponse) -> None:
        if response.tokens_used is not None:
            ctx.audit.set_token_usage(response.tokens_used.input_tokens, response.tokens_used.output_tokens)

    def _elapsed_ms(self, ctx: _RequestContext) -> float:
        return (time.perf_counter() - ctx.started) * 1000

    def _review(self, ctx: _RequestContext, attempt: _Attempt, items: list[ExtractedItem]):
        if ctx.options.auto_flag_for_review:
            flags = generate_review_flags(items, self._cfg)
            decision = needs_review(items, flags, self._cfg)
        else:
            flags = []
            decision = ReviewDecision(needs_review=False)
            if not attempt.success:
                decision = ReviewDecision(needs_review=True, reason="Extraction failed")
            elif not items:
                decision = ReviewDecision(needs_review=True, reason="No items extracted")

        if attempt.truncated and not decision.needs_review:
            decision = ReviewDecision(needs_review=True, reason="Response was truncated; items may be missing")
        return flags, decision

    def _finish(self, ctx: _RequestContext, attempt: _Attempt) -> ExtractionResult:
        items = attempt.items
        warnings = ctx.warnings + attempt.warnings
        if ctx.options.strict_validation:
            items, dropped = apply_strict_validation(items)
            warnings.extend(dropped)

        metrics = calculate_quality_metrics(items, self._cfg)
        flags, decision = self._review(ctx, attempt, items)
        elapsed = self._elapsed_ms(ctx)

        result = ExtractionResult(
            success=attempt.success,
            items=items,
            request_id=ctx.request_id,
            provider=attempt.provider,
            processing_time_ms=elapsed,
            quality_metrics=metrics,
            review_flags=flags,
            needs_review=decision.needs_review,
            review_reason=decision.reason,
            estimated_items=ctx.estimated_items,
            truncation_detected=attempt.truncated,
            validation_warnings=warnings,
            strategy=attempt.strategy,
            retry_count=ctx.retry_count,
            used_fallback=attempt.used_fallback,
            chunk_count=attempt.chunk_count,
            errors=list(attempt.errors),
        )

        audit = ctx.audit
        if attempt.provider:
            audit.set_provider(attempt.provider, attempt.model)
        audit.set_strategy(attempt.strategy).set_used_fallback(attempt.used_fallback)
        audit.set_output(success=result.success, items_extracted=len(items), sections_detected=attempt.sections)
        audit.set_quality_metrics(metrics).set_review_flags(flags)
        audit.set_verification(
            truncation_detected=ctx.truncation_seen,
            validation_passed=attempt.validation_passed,
            needs_review=decision.needs_review,
            review_reason=decision.reason,
        )
        for error in attempt.errors:
            audit.add_error(error)
        for warning in warnings:
            audit.add_warning(warning)
        audit.finalize(elapsed)

        log_event(
            logger, logging.INFO, "extraction.completed",
            request_id=ctx.request_id,
            provider=result.provider,
            strategy=result.strategy.value,
            items=len(items),
            quality_score=metrics.quality_score,
            needs_review=result.needs_review,
            retries=result.retry_count,
            time_ms=round(elapsed),
        )
        return result

    def _serve_cached(self, ctx: _RequestContext, cached: ExtractionResult) -> ExtractionResult:
        elapsed = self._elapsed_ms(ctx)
        result = cached.model_copy(update={
            "request_id": ctx.request_id,
            "from_cache": True,
            "processing_time_ms": elapsed,
            "retry_count": 0,
        })

        audit = ctx.audit
        if result.provider:
            audit.set_provider(result.provider)
        audit.set_strategy(result.strategy).set_used_fallback(result.used_fallback)
        audit.set_output(success=True, items_extracted=len(result.items))
        audit.set_quality_metrics(result.quality_metrics).set_review_flags(result.review_flags)
        audit.set_verification(
            estimated_items=result.estimated_items,
            truncation_detected=result.truncation_detected,
            validation_passed=True,
            needs_review=result.needs_review,
            review_reason=result.review_reason,
        )
        audit.add_warning("Served from cache")
        audit.finalize(elapsed)

        log_event(
            logger, logging.INFO, "extraction.cache_hit",
            request_id=ctx.request_id, items=len(result.items),
        )
        return result

    def _failed_result(self, ctx: _RequestContext, exc: BaseException) -> ExtractionResult:
        message = str(exc) or type(exc).__name__
        errors = list(exc.errors) if isinstance(exc, AllProvidersFailedError) else []
        errors.append(message)
        elapsed = self._elapsed_ms(ctx)

        log_event(
            logger, logging.ERROR, "extraction.failed",
            request_id=ctx.request_id,
            error=message,
            category=classify_error(exc).value,
            time_ms=round(elapsed),
        )
        logger.debug("Orchestrator | failure detail", exc_info=exc)

        audit = ctx.audit
        if not audit.finalized:
            for error in errors:
                audit.add_error(error)
            for warning in ctx.warnings:
                audit.add_warning(warning)
            audit.set_output(success=False, items_extracted=0)
            audit.set_verification(
                estimated_items=ctx.estimated_items,
                truncation_detected=ctx.truncation_seen,
                needs_review=True,
                review_reason=message,
            )
            if ctx.provider:
                audit.set_provider(ctx.provider)
            audit.finalize(elapsed)

        return ExtractionResult(
            success=False,
            items=[],
            request_id=ctx.request_id,
            provider=ctx.provider,
            processing_time_ms=elapsed,
            needs_review=True,
            review_reason=message,
            estimated_items=ctx.estimated_items,
            truncation_detected=ctx.truncation_seen,
            validation_warnings=list(ctx.warnings),
            retry_count=ctx.retry_count,
            errors=errors,
        )


def build_orchestrator(cfg: Settings | None = None) -> ExtractionOrchestrator:
    """Production wiring: configured provider chain, shared limiters, fresh audit store and cache."""
    from cutlist_intake.llm.router import build_default_chain

    cfg = cfg or get_settings()
    return ExtractionOrchestrator(
        build_default_chain(cfg),
        rate_limiters=get_rate_limiters(),
        audit_store=AuditStore(cfg.audit_capacity),
        cache=ExtractionCache(cfg=cfg),
        cfg=cfg,
    )
