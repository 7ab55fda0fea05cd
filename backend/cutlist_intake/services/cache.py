"""
Result cache for repeated documents.

Identical uploads (same payload bytes, same output-affecting options) are
served from an in-memory LRU instead of re-running the provider pipeline.

  key      : SHA-256 over payload kind + content + option fingerprint
  capacity : 100 entries, least-recently-used evicted first
  TTL      : 24 h (model updates change answers)
  admission: successful results with >= 1 item and average confidence >= 0.7
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from cutlist_intake.core.config import Settings, get_settings
from cutlist_intake.llm.providers import ExtractionPayload
from cutlist_intake.schemas.extraction import ExtractionOptions, ExtractionResult

logger = logging.getLogger(__name__)

# Options that change what a provider returns or how items are post-processed.
_KEYED_OPTIONS = (
    "preferred_provider",
    "enable_chunking",
    "force_chunking",
    "estimated_items",
    "strict_validation",
    "auto_flag_for_review",
)


@dataclass
class CacheStats:
    hits:    int = 0
    misses:  int = 0
    entries: int = 0
    saved_time_ms: float = 0.0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass
class _CachedResult:
    result:    ExtractionResult
    cached_at: float
    hit_count: int = 0


def cache_key(payload: ExtractionPayload, options: ExtractionOptions) -> str:
    digest = hashlib.sha256()
    digest.update(payload.kind.value.encode())
    digest.update(b"\0")
    digest.update(payload.content.encode("utf-8"))
    for name in _KEYED_OPTIONS:
        digest.update(f"\0{name}={getattr(options, name)}".encode())
    return digest.hexdigest()


class ExtractionCache:
    def __init__(
        self,
        max_entries: int | None = None,
        ttl_seconds: float | None = None,
        min_confidence: float | None = None,
        cfg: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = cfg or get_settings()
        self._max_entries = max_entries if max_entries is not None else cfg.cache_max_entries
        self._ttl = ttl_seconds if ttl_seconds is not None else cfg.cache_ttl_seconds
        self._min_confidence = min_confidence if min_confidence is not None else cfg.cache_min_confidence
        self._clock = clock
        self._entries: OrderedDict[str, _CachedResult] = OrderedDict()
        self._stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> ExtractionResult | None:
        cached = self._entries.get(key)
        if cached is None:
            self._stats.misses += 1
            return None

        if self._clock() - cached.cached_at > self._ttl:
            del self._entries[key]
            self._stats.misses += 1
            logger.debug("Cache | expired key=%s", key[:16])
            return None

        self._entries.move_to_end(key)
        cached.hit_count += 1
        self._stats.hits += 1
        self._stats.saved_time_ms += cached.result.processing_time_ms
        logger.info(
            "Cache | hit key=%s items=%d hit_count=%d",
            key[:16], len(cached.result.items), cached.hit_count,
        )
        return cached.result.model_copy(deep=True)

    def is_cacheable(self, result: ExtractionResult) -> bool:
        if not result.success or not result.items:
            return False
        avg = sum(item.confidence for item in result.items) / len(result.items)
        return avg >= self._min_confidence

    def put(self, key: str, result: ExtractionResult) -> bool:
        """Store `result` if it passes admission. Returns whether it was stored."""
        if not self.is_cacheable(result):
            return False
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache | evicted key=%s", evicted[:16])
        self._entries[key] = _CachedResult(result.model_copy(deep=True), cached_at=self._clock())
        return True

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            entries=len(self._entries),
            saved_time_ms=self._stats.saved_time_ms,
        )
