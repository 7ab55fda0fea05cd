"""
Truncation detection for provider responses.

Providers cut long outputs off at their token budget without saying so.
detect_truncation() runs staged structural checks and stops at the first
positive; recover_from_truncation() rescues whatever complete item objects
survive in the text. Both are heuristics, kept behind TruncationDetector so
they can be tuned without touching the orchestrator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from cutlist_intake.processing.parsing import (
    extract_item_dicts,
    find_item_objects,
    is_item_shaped,
    parse_response_json,
    strip_code_fence,
)

logger = logging.getLogger(__name__)

_ITEM_START = re.compile(r'"row"\s*:')
_MIN_RESPONSE_CHARS = 10
_EXPECTED_SHARE = 0.5


@dataclass
class TruncationResult:
    is_truncated:   bool
    reason:         str | None = None
    partial_items:  int | None = None
    expected_items: int | None = None


def _count_item_markers(text: str) -> int:
    return len(_ITEM_START.findall(text))


def detect_truncation(raw: str, expected_min_items: int | None = None) -> TruncationResult:
    trimmed = (raw or "").strip()

    if len(trimmed) < _MIN_RESPONSE_CHARS:
        return TruncationResult(True, "Response is empty or too short", partial_items=0)

    cleaned = strip_code_fence(trimmed)
    if not cleaned.endswith(("]", "}")):
        return TruncationResult(
            True,
            "Response ends without a closing terminator",
            partial_items=_count_item_markers(cleaned),
        )

    parsed = parse_response_json(trimmed)
    if parsed is None:
        return TruncationResult(
            True,
            "Failed to parse response as JSON",
            partial_items=_count_item_markers(cleaned),
        )

    items = extract_item_dicts(parsed)
    if items is None:
        return TruncationResult(True, "Response does not contain an items array", partial_items=0)

    if expected_min_items and len(items) < expected_min_items * _EXPECTED_SHARE:
        return TruncationResult(
            True,
            f"Got {len(items)} items but expected at least {int(expected_min_items * _EXPECTED_SHARE)}",
            partial_items=len(items),
            expected_items=expected_min_items,
        )

    if items and not is_item_shaped(items[-1]):
        return TruncationResult(
            True,
            "Last item appears incomplete (missing dimensions)",
            partial_items=len(items) - 1,
        )

    return TruncationResult(False)


def recover_from_truncation(raw: str) -> list[dict[str, Any]]:
    """Best-effort: every self-contained item object with both dimensions."""
    recovered = find_item_objects(raw or "")
    logger.info(
        "TruncationDetector | recovered items=%d from chars=%d",
        len(recovered), len(raw or ""),
    )
    return recovered


class TruncationDetector:
    """Injectable wrapper so the orchestrator depends on one seam."""

    def detect(self, raw: str, expected_min_items: int | None = None) -> TruncationResult:
        result = detect_truncation(raw, expected_min_items)
        if result.is_truncated:
            logger.warning(
                "TruncationDetector | truncated reason=%s partial=%s expected=%s",
                result.reason, result.partial_items, result.expected_items,
            )
        return result

    def recover(self, raw: str) -> list[dict[str, Any]]:
        return recover_from_truncation(raw)
