"""
Chunk planning and merging for large documents.

Decision table (should_chunk_document):

    previous attempt truncated               → chunk, multi-pass
    estimate <  min_items            (80)    → single pass
    estimate <  strong_threshold     (150)   → chunk only if the previous
                                               attempt's confidence < 0.85
    estimate >= strong_threshold             → chunk; "sections" above
                                               sections_threshold (200)

Boundaries are contiguous ranges of at most max_items_per_chunk (75) that
exactly cover [1, estimate]. merge_chunk_results() restores chunk order,
drops structural duplicates keeping the first occurrence and renumbers rows
from 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from cutlist_intake.core.config import Settings, get_settings
from cutlist_intake.schemas.extraction import ExtractedItem

logger = logging.getLogger(__name__)


class ChunkingStrategy(str, Enum):
    SINGLE_PASS = "single-pass"
    MULTI_PASS  = "multi-pass"
    SECTIONS    = "sections"


@dataclass
class PreviousAttempt:
    items_extracted: int
    truncated:       bool
    avg_confidence:  float


@dataclass
class ChunkingDecision:
    should_chunk:    bool
    reason:          str
    strategy:        ChunkingStrategy
    estimated_items: int


@dataclass(frozen=True)
class ChunkBoundary:
    start: int
    end:   int

    @property
    def size(self) -> int:
        return self.end - self.start + 1


@dataclass
class ChunkResult:
    chunk_index: int
    items:       list[ExtractedItem]
    boundary:    ChunkBoundary | None = None
    section:     str | None = None


@dataclass
class MergedResult:
    items:              list[ExtractedItem]
    total_from_chunks:  int
    duplicates_removed: int
    sections_processed: list[str] = field(default_factory=list)


def should_chunk_document(
    estimated_items: int,
    previous_attempt: PreviousAttempt | None = None,
    cfg: Settings | None = None,
) -> ChunkingDecision:
    cfg = cfg or get_settings()

    if previous_attempt is not None and previous_attempt.truncated:
        return ChunkingDecision(
            True,
            f"Previous extraction was truncated (got {previous_attempt.items_extracted} items)",
            ChunkingStrategy.MULTI_PASS,
            estimated_items,
        )

    if estimated_items < cfg.chunk_min_items:
        return ChunkingDecision(
            False,
            f"Document has ~{estimated_items} items (below threshold of {cfg.chunk_min_items})",
            ChunkingStrategy.SINGLE_PASS,
            estimated_items,
        )

    if estimated_items < cfg.chunk_strong_threshold:
        if (
            previous_attempt is not None
            and previous_attempt.avg_confidence < cfg.chunk_min_single_pass_confidence
        ):
            return ChunkingDecision(
                True,
                f"Medium document ({estimated_items} items) with low confidence "
                f"({round(previous_attempt.avg_confidence * 100)}%)",
                ChunkingStrategy.MULTI_PASS,
                estimated_items,
            )
        return ChunkingDecision(
            False,
            f"Medium document ({estimated_items} items), trying single-pass first",
            ChunkingStrategy.SINGLE_PASS,
            estimated_items,
        )

    strategy = (
        ChunkingStrategy.SECTIONS
        if estimated_items > cfg.chunk_sections_threshold
        else ChunkingStrategy.MULTI_PASS
    )
    return ChunkingDecision(
        True,
        f"Large document with ~{estimated_items} items (threshold {cfg.chunk_strong_threshold})",
        strategy,
        estimated_items,
    )


def calculate_chunk_boundaries(
    estimated_items: int,
    max_items_per_chunk: int | None = None,
) -> list[ChunkBoundary]:
    per_chunk = max_items_per_chunk or get_settings().chunk_max_items_per_chunk
    if per_chunk < 1:
        raise ValueError("max_items_per_chunk must be >= 1")

    boundaries: list[ChunkBoundary] = []
    current = 1
    while current <= estimated_items:
        end = min(current + per_chunk - 1, estimated_items)
        boundaries.append(ChunkBoundary(current, end))
        current = end + 1
    return boundaries


def build_chunk_prompt(chunk_index: int, total_chunks: int, boundary: ChunkBoundary) -> str:
    return (
        f"IMPORTANT: You are extracting chunk {chunk_index + 1} of {total_chunks}.\n\n"
        f"Focus ONLY on items numbered {boundary.start} through {boundary.end}.\n"
        "Do NOT include items from other sections or number ranges.\n\n"
        "For this chunk, extract:\n"
        f"- Items with row numbers {boundary.start} to {boundary.end}\n"
        "- Or items in the corresponding visual section if not numbered\n\n"
        "Start your response with the items array for this chunk only."
    )


def build_section_prompt(section: str) -> str:
    return (
        f'IMPORTANT: Extract ONLY items from the "{section}" section.\n\n'
        f'Look for a section header containing "{section}" and extract all items under that header.\n'
        "Stop when you reach the next section header or the end of that section.\n\n"
        "Do NOT include items from other sections."
    )


def item_key(item: ExtractedItem) -> str:
    """Structural identity: dimensions, quantity and normalized material."""
    material = " ".join((item.material or "").split()).lower()
    return f"{item.length:g}x{item.width:g}x{item.thickness:g}_q{item.quantity}_{material}"


def merge_chunk_results(chunks: list[ChunkResult]) -> MergedResult:
    merged: list[ExtractedItem] = []
    seen: set[str] = set()
    duplicates = 0
    sections: list[str] = []

    for chunk in sorted(chunks, key=lambda c: c.chunk_index):
        if chunk.section:
            sections.append(chunk.section)
        for item in chunk.items:
            key = item_key(item)
            if key in seen:
                duplicates += 1
                logger.debug("Merge | duplicate skipped key=%s chunk=%d", key, chunk.chunk_index)
                continue
            seen.add(key)
            merged.append(item)

    merged = [item.model_copy(update={"row": row}) for row, item in enumerate(merged, start=1)]
    total = sum(len(c.items) for c in chunks)

    logger.info(
        "Merge | chunks=%d total=%d kept=%d duplicates_removed=%d sections=%s",
        len(chunks), total, len(merged), duplicates, sections,
    )
    return MergedResult(
        items=merged,
        total_from_chunks=total,
        duplicates_removed=duplicates,
        sections_processed=sections,
    )
