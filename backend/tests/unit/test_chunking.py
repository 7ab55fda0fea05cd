"""
Unit Tests: chunk decision, boundaries and merge
"""

from __future__ import annotations

import pytest

from cutlist_intake.processing.chunking import (
    ChunkBoundary,
    ChunkingStrategy,
    ChunkResult,
    PreviousAttempt,
    build_chunk_prompt,
    build_section_prompt,
    calculate_chunk_boundaries,
    item_key,
    merge_chunk_results,
    should_chunk_document,
)
from cutlist_intake.schemas.extraction import ExtractedItem


def _item(length: float, width: float = 400, label: str | None = None, **extra) -> ExtractedItem:
    return ExtractedItem(length=length, width=width, label=label, **extra)


@pytest.mark.unit
class TestShouldChunkDocument:

    @pytest.mark.parametrize("estimate", [0, 1, 50, 79])
    def test_small_documents_stay_single_pass(self, test_settings, estimate):
        decision = should_chunk_document(estimate, None, test_settings)

        assert decision.should_chunk is False
        assert decision.strategy == ChunkingStrategy.SINGLE_PASS

    @pytest.mark.parametrize("estimate, strategy", [
        (150, ChunkingStrategy.MULTI_PASS),
        (200, ChunkingStrategy.MULTI_PASS),
        (201, ChunkingStrategy.SECTIONS),
        (500, ChunkingStrategy.SECTIONS),
    ])
    def test_large_documents_always_chunk(self, test_settings, estimate, strategy):
        decision = should_chunk_document(estimate, None, test_settings)

        assert decision.should_chunk is True
        assert decision.strategy == strategy
        assert decision.estimated_items == estimate

    def test_medium_document_tries_single_pass_first(self, test_settings):
        assert should_chunk_document(100, None, test_settings).should_chunk is False

    def test_medium_document_chunks_after_low_confidence_attempt(self, test_settings):
        previous = PreviousAttempt(items_extracted=90, truncated=False, avg_confidence=0.6)

        decision = should_chunk_document(100, previous, test_settings)

        assert decision.should_chunk is True
        assert decision.strategy == ChunkingStrategy.MULTI_PASS

    def test_medium_document_with_confident_attempt_stays_single(self, test_settings):
        previous = PreviousAttempt(items_extracted=100, truncated=False, avg_confidence=0.9)

        assert should_chunk_document(100, previous, test_settings).should_chunk is False

    def test_truncated_attempt_forces_chunking_at_any_size(self, test_settings):
        previous = PreviousAttempt(items_extracted=12, truncated=True, avg_confidence=0.9)

        decision = should_chunk_document(10, previous, test_settings)

        assert decision.should_chunk is True
        assert decision.strategy == ChunkingStrategy.MULTI_PASS
        assert "truncated" in decision.reason


@pytest.mark.unit
class TestChunkBoundaries:

    def test_two_hundred_items(self):
        assert calculate_chunk_boundaries(200, 75) == [
            ChunkBoundary(1, 75),
            ChunkBoundary(76, 150),
            ChunkBoundary(151, 200),
        ]

    def test_zero_items_means_no_chunks(self):
        assert calculate_chunk_boundaries(0, 75) == []

    @pytest.mark.parametrize("per_chunk", [1, 7, 75])
    def test_boundaries_exactly_cover_the_range(self, per_chunk):
        for total in range(1, 260):
            boundaries = calculate_chunk_boundaries(total, per_chunk)

            assert boundaries[0].start == 1
            assert boundaries[-1].end == total
            assert all(b.size <= per_chunk for b in boundaries)
            assert all(nxt.start == prev.end + 1 for prev, nxt in zip(boundaries, boundaries[1:]))

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            calculate_chunk_boundaries(10, -1)

    def test_chunk_prompt_names_the_range(self):
        prompt = build_chunk_prompt(1, 3, ChunkBoundary(76, 150))

        assert "chunk 2 of 3" in prompt
        assert "items numbered 76 through 150" in prompt

    def test_section_prompt_names_the_section(self):
        assert '"DOORS" section' in build_section_prompt("DOORS")


@pytest.mark.unit
class TestMergeChunkResults:

    def test_item_key_normalizes_material(self):
        assert item_key(_item(600, material="  White   Melamine ")) == item_key(_item(600, material="white melamine"))
        assert item_key(_item(600, quantity=2)) != item_key(_item(600, quantity=1))

    def test_rows_are_renumbered_in_chunk_order(self):
        merged = merge_chunk_results([
            ChunkResult(1, [_item(500, row=76), _item(510, row=77)]),
            ChunkResult(0, [_item(600, row=1), _item(610, row=2)]),
        ])

        assert [item.length for item in merged.items] == [600, 610, 500, 510]
        assert [item.row for item in merged.items] == [1, 2, 3, 4]
        assert merged.total_from_chunks == 4
        assert merged.duplicates_removed == 0

    def test_duplicates_keep_first_occurrence(self):
        merged = merge_chunk_results([
            ChunkResult(0, [_item(600, label="from first chunk")]),
            ChunkResult(1, [_item(600, label="overlap"), _item(700)]),
        ])

        assert [item.label for item in merged.items] == ["from first chunk", None]
        assert merged.duplicates_removed == 1
        assert merged.total_from_chunks == 3

    def test_merge_is_independent_of_arrival_order(self):
        chunks = [
            ChunkResult(0, [_item(600), _item(610)]),
            ChunkResult(1, [_item(610), _item(620)]),
            ChunkResult(2, [_item(630)]),
        ]

        forward = merge_chunk_results(chunks)
        backward = merge_chunk_results(list(reversed(chunks)))

        assert [item_key(i) for i in forward.items] == [item_key(i) for i in backward.items]
        assert forward.duplicates_removed == backward.duplicates_removed == 1

    def test_sections_are_collected(self):
        merged = merge_chunk_results([
            ChunkResult(0, [_item(600)], section="CARCASES"),
            ChunkResult(1, [_item(700)], section="DOORS"),
        ])

        assert merged.sections_processed == ["CARCASES", "DOORS"]

    def test_merging_nothing(self):
        merged = merge_chunk_results([])

        assert merged.items == []
        assert merged.total_from_chunks == 0
