"""
Response validation, review flags and quality scoring.

  validate_response()          raw provider text → ValidationResult
                               (bad items are flagged, never silently dropped)
  apply_strict_validation()    drop items missing length/width
  generate_review_flags()      per-item flags, high severity first
  needs_review()               overall verdict + reason
  calculate_quality_metrics()  composite 0-100 score; empty list scores 0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cutlist_intake.core.config import Settings, get_settings
from cutlist_intake.processing.parsing import (
    extract_item_dicts,
    find_item_objects,
    normalize_items,
    parse_response_json,
)
from cutlist_intake.schemas.extraction import (
    ExtractedItem,
    QualityMetrics,
    ReviewDecision,
    ReviewFlag,
    ReviewSeverity,
)

logger = logging.getLogger(__name__)

_SWAP_WARNING_PREFIX = "Swapped length and width"

# Quality score weights
_LOW_CONFIDENCE_PENALTY = 3
_SUSPICIOUS_DIM_PENALTY = 5
_HIGH_QUANTITY_PENALTY  = 2
_MISSING_FIELD_PENALTY  = 10


@dataclass
class ValidationResult:
    success:  bool
    items:    list[ExtractedItem] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors:   list[str] = field(default_factory=list)


def _item_warnings(index: int, item: ExtractedItem, cfg: Settings) -> list[str]:
    label = f"Item {index + 1}"
    warnings: list[str] = []
    if item.length > cfg.max_plausible_length:
        warnings.append(f"{label}: Length {item.length:g}mm is unusually large")
    if item.width > cfg.max_plausible_width:
        warnings.append(f"{label}: Width {item.width:g}mm is unusually large")
    if item.quantity > cfg.high_quantity:
        warnings.append(f"{label}: Quantity {item.quantity} is unusually high")
    if any(w.startswith(_SWAP_WARNING_PREFIX) for w in item.warnings):
        warnings.append(f"{label}: Swapped length and width (length should be >= width)")
    for name in item.missing_fields:
        warnings.append(f"{label}: Missing required field '{name}'")
    return warnings


def validate_items(items: list[ExtractedItem], cfg: Settings | None = None) -> list[str]:
    cfg = cfg or get_settings()
    warnings: list[str] = []
    for index, item in enumerate(items):
        warnings.extend(_item_warnings(index, item, cfg))
    return warnings


def validate_response(raw: str, cfg: Settings | None = None) -> ValidationResult:
    """
    Parse and normalize one provider response.

    Unparseable text falls back to scanning for complete item objects; the
    result is only unsuccessful when nothing item-shaped can be found.
    """
    cfg = cfg or get_settings()
    warnings: list[str] = []

    parsed = parse_response_json(raw or "")
    if parsed is None:
        recovered = find_item_objects(raw or "")
        if not recovered:
            return ValidationResult(False, errors=["Failed to parse AI response as JSON"])
        warnings.append(f"Recovered {len(recovered)} items from malformed JSON")
        raw_items = recovered
    else:
        raw_items = extract_item_dicts(parsed)
        if raw_items is None:
            return ValidationResult(False, errors=["Response doesn't contain an items array"])

    items, notes = normalize_items(raw_items, cfg)
    warnings.extend(notes)
    warnings.extend(validate_items(items, cfg))

    logger.debug("Validation | items=%d warnings=%d", len(items), len(warnings))
    return ValidationResult(True, items=items, warnings=warnings)


def apply_strict_validation(items: list[ExtractedItem]) -> tuple[list[ExtractedItem], list[str]]:
    kept: list[ExtractedItem] = []
    dropped: list[str] = []
    for index, item in enumerate(items):
        missing = item.missing_fields
        if missing:
            dropped.append(f"Item {index + 1} dropped: missing {', '.join(missing)}")
        else:
            kept.append(item)
    return kept, dropped


# ---------------------------------------------------------------------------
# Review flags
# ---------------------------------------------------------------------------

def generate_review_flags(items: list[ExtractedItem], cfg: Settings | None = None) -> list[ReviewFlag]:
    cfg = cfg or get_settings()
    flags: list[ReviewFlag] = []

    for i, item in enumerate(items):
        if item.confidence < cfg.low_confidence:
            flags.append(ReviewFlag(
                item_index=i,
                reason=f"Low confidence ({round(item.confidence * 100)}%)",
                severity=(ReviewSeverity.HIGH if item.confidence < cfg.review_critical_confidence
                          else ReviewSeverity.MEDIUM),
                suggested_action="Verify all dimensions and quantities",
                current_value=item.confidence,
            ))

        for name in item.missing_fields:
            flags.append(ReviewFlag(
                item_index=i,
                field=name,
                reason=f"Missing required field: {name}",
                severity=ReviewSeverity.HIGH,
                suggested_action=f"Enter the {name} manually",
            ))

        if item.length > cfg.review_max_length:
            flags.append(ReviewFlag(
                item_index=i,
                field="length",
                reason=f"Unusually large length: {item.length:g}mm",
                severity=(ReviewSeverity.HIGH if item.length > cfg.review_critical_length
                          else ReviewSeverity.LOW),
                suggested_action="Verify this is correct (typical max is 2800mm)",
                current_value=item.length,
            ))

        if item.width > cfg.review_max_width:
            flags.append(ReviewFlag(
                item_index=i,
                field="width",
                reason=f"Unusually large width: {item.width:g}mm",
                severity=(ReviewSeverity.HIGH if item.width > cfg.review_critical_width
                          else ReviewSeverity.LOW),
                suggested_action="Verify this is correct (typical max is 1220mm)",
                current_value=item.width,
            ))

        present = [(name, getattr(item, name)) for name in ("length", "width") if getattr(item, name) > 0]
        small = [(name, value) for name, value in present if value < cfg.review_min_dimension]
        if small:
            name, value = min(small, key=lambda pair: pair[1])
            flags.append(ReviewFlag(
                item_index=i,
                field=name,
                reason=f"Very small dimension: {value:g}mm",
                severity=ReviewSeverity.MEDIUM,
                suggested_action="Verify this isn't a typo (might be missing a digit)",
                current_value=value,
            ))

        if item.quantity > cfg.review_high_quantity:
            flags.append(ReviewFlag(
                item_index=i,
                field="quantity",
                reason=f"High quantity: {item.quantity}",
                severity=(ReviewSeverity.HIGH if item.quantity > cfg.review_critical_quantity
                          else ReviewSeverity.LOW),
                suggested_action="Verify quantity is correct",
                current_value=item.quantity,
            ))

        for name, conf in item.field_confidence.items():
            if conf < cfg.review_field_confidence:
                flags.append(ReviewFlag(
                    item_index=i,
                    field=name,
                    reason=f"Low field confidence for {name}: {round(conf * 100)}%",
                    severity=ReviewSeverity.MEDIUM,
                    suggested_action=f"Verify {name} value",
                    current_value=conf,
                ))

    flags.sort(key=lambda flag: flag.sort_key)
    return flags


def needs_review(
    items: list[ExtractedItem],
    flags: list[ReviewFlag],
    cfg: Settings | None = None,
) -> ReviewDecision:
    cfg = cfg or get_settings()

    if not items:
        return ReviewDecision(needs_review=True, reason="No items extracted")

    high = sum(1 for f in flags if f.severity == ReviewSeverity.HIGH)
    if high:
        return ReviewDecision(
            needs_review=True,
            reason=f"{high} high-severity issue{'s' if high > 1 else ''} detected",
        )

    medium = sum(1 for f in flags if f.severity == ReviewSeverity.MEDIUM)
    threshold = len(items) * cfg.review_medium_flag_share
    if medium > threshold:
        return ReviewDecision(
            needs_review=True,
            reason=f"{medium} items flagged for review (>{round(threshold)} threshold)",
        )

    avg = sum(item.confidence for item in items) / len(items)
    if avg < cfg.low_confidence:
        return ReviewDecision(needs_review=True, reason=f"Low average confidence: {round(avg * 100)}%")

    return ReviewDecision(needs_review=False)


# ---------------------------------------------------------------------------
# Quality score
# ---------------------------------------------------------------------------

def calculate_quality_metrics(items: list[ExtractedItem], cfg: Settings | None = None) -> QualityMetrics:
    if not items:
        return QualityMetrics()

    cfg = cfg or get_settings()
    total_confidence = 0.0
    low_confidence = suspicious = high_quantity = missing = 0

    for item in items:
        total_confidence += item.confidence
        if item.confidence < cfg.low_confidence:
            low_confidence += 1
        if item.length > cfg.max_plausible_length or item.length < cfg.min_plausible_dimension:
            suspicious += 1
        if item.width > cfg.max_plausible_width or item.width < cfg.min_plausible_dimension:
            suspicious += 1
        if item.quantity > cfg.high_quantity:
            high_quantity += 1
        if item.missing_fields:
            missing += 1

    score = 100.0
    score -= low_confidence * _LOW_CONFIDENCE_PENALTY
    score -= suspicious * _SUSPICIOUS_DIM_PENALTY
    score -= high_quantity * _HIGH_QUANTITY_PENALTY
    score -= missing * _MISSING_FIELD_PENALTY

    return QualityMetrics(
        items_extracted=len(items),
        avg_confidence=total_confidence / len(items),
        low_confidence_count=low_confidence,
        suspicious_dimensions=suspicious,
        high_quantity_count=high_quantity,
        missing_fields=missing,
        quality_score=round(max(0.0, min(100.0, score))),
    )
