"""
Observability Tracing: LangSmith + OpenTelemetry

Traces every extraction end-to-end:
  Estimate → Plan → Provider Call(s) → Validate → Audit

Supported backends:

  LangSmith (hosted):
    - Activated purely by environment variables; LangChain chat models pick
      them up automatically, so every provider call is traced.

  OpenTelemetry (Jaeger, Tempo, Datadog APM ...):
    - `@traced` always opens a span through opentelemetry-api. Without an SDK
      the span is a no-op; with OTEL_ENABLED=true and the `otel` extra
      installed, spans are exported over OTLP/HTTP.

Decorator `@traced(name)`:
  Wraps an async function in a span plus a DEBUG timing log line, records
  exceptions on the span and re-raises them.

Environment variables:
  LANGSMITH_API_KEY=ls__...        (copied to LANGCHAIN_API_KEY)
  LANGSMITH_PROJECT=cutlist-intake

  OTEL_ENABLED=false
  OTEL_EXPORTER_OTLP_ENDPOINT=http://otel-collector:4318/v1/traces
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from cutlist_intake.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])

_tracer = trace.get_tracer("cutlist_intake")


# ---------------------------------------------------------------------------
# TracingConfig: initialise at startup
# ---------------------------------------------------------------------------

class TracingConfig:
    """
    Initialise all active tracing backends from settings.

    Call once at startup::

        from cutlist_intake.observability.tracing import TracingConfig
        TracingConfig.init()
    """

    _initialised: bool = False

    @classmethod
    def init(cls, cfg: Settings | None = None) -> None:
        if cls._initialised:
            return
        cls._initialised = True

        cfg = cfg or get_settings()
        cls._init_langsmith(cfg)
        cls._init_otel(cfg)

    @staticmethod
    def _init_langsmith(cfg: Settings) -> None:
        if cfg.langsmith_api_key and not os.environ.get("LANGCHAIN_API_KEY"):
            os.environ["LANGCHAIN_TRACING_V2"] = "true"
            os.environ["LANGCHAIN_API_KEY"]     = cfg.langsmith_api_key
            os.environ["LANGCHAIN_PROJECT"]     = cfg.langsmith_project
            logger.info("LangSmith tracing enabled | project=%s", cfg.langsmith_project)
        elif os.environ.get("LANGCHAIN_TRACING_V2") == "true":
            logger.info(
                "LangSmith tracing active (from env) | project=%s",
                os.environ.get("LANGCHAIN_PROJECT", "default"),
            )
        else:
            logger.debug("LangSmith tracing disabled (LANGCHAIN_TRACING_V2 not set)")

    @staticmethod
    def _init_otel(cfg: Settings) -> None:
        """Requires the `otel` extra (opentelemetry-sdk + OTLP exporter)."""
        if not cfg.otel_enabled or not cfg.otel_exporter_otlp_endpoint:
            logger.debug("OTEL tracing disabled")
            return

        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter  # type: ignore
            from opentelemetry.sdk.trace import TracerProvider                    # type: ignore
            from opentelemetry.sdk.trace.export import BatchSpanProcessor        # type: ignore
        except ImportError:
            logger.warning(
                "opentelemetry-sdk / opentelemetry-exporter-otlp not installed. "
                "Run: pip install 'cutlist-intake[otel]'"
            )
            return

        provider = TracerProvider()
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otel_exporter_otlp_endpoint))
        )
        trace.set_tracer_provider(provider)
        logger.info("OTEL tracing enabled | endpoint=%s", cfg.otel_exporter_otlp_endpoint)


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Usage::

        @traced("extraction.single_pass")
        async def _single_pass(...): ...

        @traced()   # uses the function's qualified name
        async def estimate(...): ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            with _tracer.start_as_current_span(span_name) as span:
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    elapsed_ms = (time.perf_counter() - t0) * 1000
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    logger.debug(
                        "trace | span=%s elapsed_ms=%.1f error=%s",
                        span_name, elapsed_ms, exc,
                    )
                    raise
                elapsed_ms = (time.perf_counter() - t0) * 1000
                span.set_attribute("elapsed_ms", elapsed_ms)
                logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
                return result

        return wrapper  # type: ignore[return-value]
    return decorator
