"""
Extraction: Pydantic Request/Result Schemas

Covers one call of ExtractionOrchestrator.extract():
  - Caller options (a fixed, recognised set; anything else is ignored)
  - Input descriptor (what kind of document was submitted)
  - Canonical extracted item with its operation sub-objects
  - Quality metrics, review flags and the final ExtractionResult

Design decisions:
  - ExtractedItem is the ONLY item shape downstream code sees; provider-native
    shapes are converted in processing/parsing.py before validation.
  - Invariants are enforced on construction: quantity >= 1, length >= width
    (swapped if not), every confidence clamped to [0, 1].
  - ExtractionResult is plain data so it serialises with model_dump_json().
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InputKind(str, Enum):
    IMAGE = "image"
    PDF   = "pdf"     # text layer extracted from a PDF
    TEXT  = "text"    # pasted text


class ExtractionStrategy(str, Enum):
    SINGLE_PASS = "single-pass"
    CHUNKED     = "chunked"     # numeric row ranges
    SEGMENTED   = "segmented"   # "sections" plan
    FALLBACK    = "fallback"    # single pass served by a fallback provider


class ReviewSeverity(str, Enum):
    HIGH   = "high"
    MEDIUM = "medium"
    LOW    = "low"


_SEVERITY_ORDER = {ReviewSeverity.HIGH: 0, ReviewSeverity.MEDIUM: 1, ReviewSeverity.LOW: 2}


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Caller options
# ---------------------------------------------------------------------------

class ExtractionOptions(BaseModel):
    """
    Options recognised by the orchestrator. Unknown keys are dropped, not
    rejected, so callers can pass through their own request dicts.
    `None` means "use the configured default".
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    preferred_provider:   str | None   = Field(None, alias="preferredProvider")
    enable_fallback:      bool         = Field(True, alias="enableFallback")
    max_retries:          int | None   = Field(None, ge=0, alias="maxRetries")
    retry_delay_ms:       int | None   = Field(None, ge=0, alias="retryDelayMs")
    enable_chunking:      bool         = Field(True, alias="enableChunking")
    force_chunking:       bool         = Field(False, alias="forceChunking")
    estimated_items:      int | None   = Field(None, ge=0, alias="estimatedItems")
    strict_validation:    bool         = Field(False, alias="strictValidation")
    auto_flag_for_review: bool         = Field(True, alias="autoFlagForReview")
    enable_audit:         bool         = Field(True, alias="enableAudit")
    organization_id:      str | None   = Field(None, alias="organizationId")
    file_name:            str | None   = Field(None, alias="fileName")
    file_type:            InputKind | None = Field(None, alias="fileType")


class InputDescriptor(BaseModel):
    """What was submitted. Recorded on the audit entry, never persisted."""
    model_config = ConfigDict(frozen=True)

    kind:       InputKind   = InputKind.IMAGE
    file_name:  str | None  = None
    size_bytes: int         = Field(0, ge=0)
    page_count: int | None  = None

    @property
    def size_kb(self) -> int:
        return round(self.size_bytes / 1024)


# ---------------------------------------------------------------------------
# Item operations
# ---------------------------------------------------------------------------

class EdgeBanding(BaseModel):
    """Which edges receive banding. L1/L2 are the long edges, W1/W2 the short ones."""
    L1: bool = False
    L2: bool = False
    W1: bool = False
    W2: bool = False
    material: str | None = None
    description: str | None = None

    @property
    def edges(self) -> list[str]:
        return [side for side in ("L1", "L2", "W1", "W2") if getattr(self, side)]


class Grooving(BaseModel):
    along_length: bool = False   # GL
    along_width:  bool = False   # GW
    offset_mm:    float = 0.0
    depth_mm:     float = 10.0
    width_mm:     float = 8.0
    description:  str | None = None


class HoleOps(BaseModel):
    count:       int = Field(0, ge=0)
    pattern:     str | None = None
    description: str | None = None


class MachiningOps(BaseModel):
    routing:     bool = False
    description: str | None = None


# ---------------------------------------------------------------------------
# Canonical item
# ---------------------------------------------------------------------------

REQUIRED_NUMERIC_FIELDS: tuple[str, ...] = ("length", "width")


class ExtractedItem(BaseModel):
    """
    One manufactured part. Dimensions are millimetres.

    length/width of 0 mean "not read"; the item is kept and flagged as
    missing required fields rather than dropped.
    """
    row:            int | None = None
    label:          str | None = None
    length:         float = Field(0.0, ge=0)
    width:          float = Field(0.0, ge=0)
    thickness:      float = Field(18.0, gt=0)
    quantity:       int   = Field(1, ge=1)
    material:       str   = "default"
    allow_rotation: bool  = False

    edge_banding: EdgeBanding | None  = None
    grooving:     Grooving | None     = None
    holes:        HoleOps | None      = None
    machining:    MachiningOps | None = None

    notes:            str | None = None
    confidence:       float = 0.8
    field_confidence: dict[str, float] = Field(default_factory=dict)
    warnings:         list[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp_unit(value)

    @field_validator("field_confidence")
    @classmethod
    def _clamp_field_confidence(cls, value: dict[str, float]) -> dict[str, float]:
        return {name: _clamp_unit(conf) for name, conf in value.items() if conf is not None}

    @model_validator(mode="after")
    def _length_is_longest(self) -> "ExtractedItem":
        if self.length < self.width:
            self.length, self.width = self.width, self.length
            fc = self.field_confidence
            length_conf, width_conf = fc.pop("length", None), fc.pop("width", None)
            if width_conf is not None:
                fc["length"] = width_conf
            if length_conf is not None:
                fc["width"] = length_conf
            self.warnings.append("Swapped length and width (length should be >= width)")
        return self

    @property
    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_NUMERIC_FIELDS if getattr(self, name) <= 0]

    @property
    def has_operations(self) -> bool:
        return any((self.edge_banding, self.grooving, self.holes, self.machining))


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

class QualityMetrics(BaseModel):
    items_extracted:       int   = 0
    avg_confidence:        float = 0.0
    low_confidence_count:  int   = 0
    suspicious_dimensions: int   = 0
    high_quantity_count:   int   = 0
    missing_fields:        int   = 0
    quality_score:         int   = Field(0, ge=0, le=100)


class ReviewFlag(BaseModel):
    """A marker asking a human to double-check one item (or the whole result when item_index is None)."""
    severity:         ReviewSeverity
    reason:           str
    item_index:       int | None = None
    field:            str | None = None
    suggested_action: str | None = None
    current_value:    Any = None

    @property
    def sort_key(self) -> int:
        return _SEVERITY_ORDER[self.severity]


class ReviewDecision(BaseModel):
    needs_review: bool
    reason:       str | None = None


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------

class ExtractionResult(BaseModel):
    """Everything a caller learns about one extract() call. Never raised, always returned."""
    success:     bool
    items:       list[ExtractedItem] = Field(default_factory=list)
    request_id:  str
    provider:    str | None = None
    processing_time_ms: float = 0.0

    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    review_flags:    list[ReviewFlag] = Field(default_factory=list)
    needs_review:    bool = False
    review_reason:   str | None = None

    estimated_items:     int | None = None
    truncation_detected: bool = False
    validation_warnings: list[str] = Field(default_factory=list)

    strategy:      ExtractionStrategy = ExtractionStrategy.SINGLE_PASS
    retry_count:   int  = 0
    used_fallback: bool = False
    chunk_count:   int | None = None
    from_cache:    bool = False

    errors: list[str] = Field(default_factory=list)
