"""
Observability Package: Tracing + Audit Trail

Provides:
  TracingConfig  : LangSmith / OTLP initialisation
  traced         : decorator for instrumenting async stages
  AuditStore     : bounded history of every extraction + accuracy metrics

Usage::

    from cutlist_intake.observability import AuditStore, TracingConfig
    TracingConfig.init()
    store = AuditStore(capacity=1000)
    store.calculate_accuracy_metrics("week")
"""

from cutlist_intake.observability.audit import AccuracyMetrics, AuditBuilder, AuditEntry, AuditStore
from cutlist_intake.observability.tracing import TracingConfig, traced

__all__ = ["AccuracyMetrics", "AuditBuilder", "AuditEntry", "AuditStore", "TracingConfig", "traced"]
