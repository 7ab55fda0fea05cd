"""
Response Processing Package
═══════════════════════════

Turns raw provider text into trusted, scored items:

  Parse/Normalize → Truncation Check → Chunk Plan/Merge → Validate/Score

Modules
───────
  parsing.py     JSON repair and the single wire-shape → ExtractedItem adapter
  truncation.py  staged truncation detection and partial recovery
  chunking.py    chunk decision table, boundaries, scoped prompts, merge/dedup
  validation.py  plausibility warnings, review flags, quality score

Every function here is pure: no I/O, no provider calls.
"""

from cutlist_intake.processing.chunking import (
    ChunkBoundary,
    ChunkingDecision,
    ChunkingStrategy,
    ChunkResult,
    MergedResult,
    calculate_chunk_boundaries,
    merge_chunk_results,
    should_chunk_document,
)
from cutlist_intake.processing.truncation import TruncationDetector, TruncationResult
from cutlist_intake.processing.validation import (
    ValidationResult,
    calculate_quality_metrics,
    generate_review_flags,
    needs_review,
    validate_response,
)

__all__ = [
    "ChunkBoundary",
    "ChunkingDecision",
    "ChunkingStrategy",
    "ChunkResult",
    "MergedResult",
    "TruncationDetector",
    "TruncationResult",
    "ValidationResult",
    "calculate_chunk_boundaries",
    "calculate_quality_metrics",
    "generate_review_flags",
    "merge_chunk_results",
    "needs_review",
    "should_chunk_document",
    "validate_response",
]
