"""
Response Parsing & Normalization
════════════════════════════════

Everything that turns provider text into canonical ExtractedItem objects.

  strip_code_fence()        ```json ... ``` (complete or cut off) → inner text
  parse_response_json()     strict parse → bracket slice → truncated-structure
                            repair → balanced item-object scan
  extract_item_dicts()      bare list  OR  {"items": [...]} / {"parts": [...]}
  find_item_objects()       string-aware balanced-brace scan used for repair
                            and for truncation recovery
  normalize_item()          the single adapter from any accepted wire shape to
                            ExtractedItem (no I/O, no logging side effects)
  parse_item_count_estimate()  {"estimatedCount": N, "sections": [...]} or
                            the first integer in the text

Nothing downstream of normalize_item() branches on wire shape.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from pydantic import ValidationError

from cutlist_intake.core.config import Settings, get_settings
from cutlist_intake.schemas.extraction import (
    EdgeBanding,
    ExtractedItem,
    Grooving,
    HoleOps,
    MachiningOps,
)

_COMPLETE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_OPENING_FENCE  = re.compile(r"^```(?:json)?\s*(.*)", re.DOTALL)
_NUMBER         = re.compile(r"[-+]?\d+(?:[.,]\d+)?")
_INTEGER        = re.compile(r"\d+")

_ENVELOPE_KEYS = ("items", "parts")


# ---------------------------------------------------------------------------
# Raw text → JSON
# ---------------------------------------------------------------------------

def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    complete = _COMPLETE_FENCE.search(cleaned)
    if complete:
        return complete.group(1).strip()
    opening = _OPENING_FENCE.match(cleaned)
    if opening:
        return opening.group(1).strip()
    return cleaned


def _try_json(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def repair_truncated_json(text: str) -> str | None:
    """
    Close whatever a cut-off response left open: an unterminated string,
    then every open array/object in reverse order. Returns None when the
    text has nothing to repair or is structurally inconsistent.
    """
    stack: list[str] = []
    in_string = False
    escape = False
    for char in text:
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "[{":
            stack.append("]" if char == "[" else "}")
        elif char in "]}":
            if not stack or stack[-1] != char:
                return None
            stack.pop()

    if not stack and not in_string:
        return None

    repaired = text + ('"' if in_string else "")
    repaired = repaired.rstrip().rstrip(",:").rstrip()
    return repaired + "".join(reversed(stack))


def _iter_balanced_objects(text: str) -> Iterator[tuple[int, int]]:
    """Yield (start, end) of every balanced {...} span, inner spans first."""
    starts: list[int] = []
    in_string = False
    escape = False
    for index, char in enumerate(text):
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            starts.append(index)
        elif char == "}" and starts:
            yield starts.pop(), index + 1


def find_item_objects(text: str) -> list[dict[str, Any]]:
    """
    Parse every self-contained item-shaped object in `text`, in document order.

    Objects nested inside an accepted item (its edgeBanding, ...) are not
    reported separately; malformed fragments are skipped.
    """
    spans = sorted(_iter_balanced_objects(text), key=lambda span: (span[0], -span[1]))
    accepted: list[tuple[int, int]] = []
    items: list[dict[str, Any]] = []
    for start, end in spans:
        if any(a_start <= start and end <= a_end for a_start, a_end in accepted):
            continue
        candidate = _try_json(text[start:end])
        if isinstance(candidate, dict) and is_item_shaped(candidate):
            accepted.append((start, end))
            items.append(candidate)
    return items


def parse_response_json(text: str) -> Any | None:
    cleaned = strip_code_fence(text)
    if not cleaned:
        return None

    parsed = _try_json(cleaned)
    if parsed is not None:
        return parsed

    # Only the outermost structure is sliced; an object inside a cut-off
    # array must not be mistaken for the whole response.
    openers = [(cleaned.find(o), o, c) for o, c in (("[", "]"), ("{", "}")) if o in cleaned]
    if openers:
        start, _, closer = min(openers)
        end = cleaned.rfind(closer)
        candidate = cleaned[start:end + 1] if end > start else cleaned[start:]
        parsed = _try_json(candidate)
        if parsed is not None:
            return parsed
        repaired = repair_truncated_json(cleaned[start:])
        if repaired is not None:
            parsed = _try_json(repaired)
            if parsed is not None:
                return parsed

    objects = find_item_objects(cleaned)
    return objects or None


def extract_item_dicts(parsed: Any) -> list[dict[str, Any]] | None:
    """The item list from either wire shape, or None when there is none."""
    if isinstance(parsed, list):
        return [entry for entry in parsed if isinstance(entry, dict)]
    if isinstance(parsed, dict):
        for key in _ENVELOPE_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                return [entry for entry in value if isinstance(entry, dict)]
    return None


# ---------------------------------------------------------------------------
# Wire shape → ExtractedItem
# ---------------------------------------------------------------------------

_LENGTH_KEYS    = ("length", "L", "len")
_WIDTH_KEYS     = ("width", "W", "wid")
_THICKNESS_KEYS = ("thickness", "thickness_mm", "T")
_QUANTITY_KEYS  = ("quantity", "qty", "count")
_MATERIAL_KEYS  = ("material", "material_id", "materialCode")
_LABEL_KEYS     = ("label", "name", "part_name")
_ROTATION_KEYS  = ("allowRotation", "allow_rotation", "rotate")
_CONF_MAP_KEYS  = ("fieldConfidence", "field_confidence")

_EDGE_KEYS      = ("edgeBanding", "edge_banding", "edging")
_GROOVE_KEYS    = ("grooving", "groove", "grooves")
_HOLE_KEYS      = ("drilling", "holes", "holeOps")
_MACHINING_KEYS = ("cncOperations", "cnc", "machining")


def to_number(value: Any) -> float | None:
    """Numbers pass through; strings like "720", "720mm" or "12,5" are read. NaN and infinities are None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        match = _NUMBER.search(value)
        if match:
            return float(match.group(0).replace(",", "."))
    return None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _first(raw: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _dimension(raw: dict[str, Any], keys: tuple[str, ...], size_key: str) -> float | None:
    value = to_number(_first(raw, keys))
    if value is None:
        size = raw.get("size")
        if isinstance(size, dict):
            value = to_number(_first(size, (size_key, keys[0])))
    return value


def is_item_shaped(raw: dict[str, Any]) -> bool:
    length = _dimension(raw, _LENGTH_KEYS, "L")
    width = _dimension(raw, _WIDTH_KEYS, "W")
    return bool(length) and bool(width)


def _operation(raw: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any] | None:
    value = _first(raw, keys)
    if value is None:
        nested = raw.get("operations")
        if isinstance(nested, dict):
            value = _first(nested, keys)
    if isinstance(value, dict) and value.get("detected"):
        return value
    return None


def _edge_banding(raw: dict[str, Any]) -> EdgeBanding | None:
    op = _operation(raw, _EDGE_KEYS)
    if op is None:
        return None
    sides = {side: bool(op.get(side)) for side in ("L1", "L2", "W1", "W2")}
    for side in _as_list(op.get("edges")):
        if isinstance(side, str) and side.upper() in sides:
            sides[side.upper()] = True
    return EdgeBanding(**sides, material=op.get("material"), description=op.get("description"))


def _grooving(raw: dict[str, Any]) -> Grooving | None:
    op = _operation(raw, _GROOVE_KEYS)
    if op is None:
        return None
    return Grooving(
        along_length=bool(op.get("GL") or op.get("along_length")),
        along_width=bool(op.get("GW") or op.get("along_width")),
        description=op.get("description") or op.get("profileHint"),
    )


def _holes(raw: dict[str, Any]) -> HoleOps | None:
    op = _operation(raw, _HOLE_KEYS)
    if op is None:
        machining = _operation(raw, _MACHINING_KEYS)
        count = to_number(machining.get("holes")) if machining else None
        if not count:
            return None
        return HoleOps(count=int(count))
    count = to_number(op.get("count") or op.get("holes"))
    return HoleOps(
        count=int(count) if count and count > 0 else 0,
        pattern=op.get("pattern"),
        description=op.get("description"),
    )


def _machining(raw: dict[str, Any]) -> MachiningOps | None:
    op = _operation(raw, _MACHINING_KEYS)
    if op is None:
        return None
    return MachiningOps(routing=bool(op.get("routing")), description=op.get("description"))


def _field_confidence(raw: dict[str, Any]) -> dict[str, float]:
    value = _first(raw, _CONF_MAP_KEYS)
    if not isinstance(value, dict):
        return {}
    result = {}
    for name, conf in value.items():
        number = to_number(conf)
        if number is not None:
            result[str(name)] = number
    return result


def normalize_item(
    raw: dict[str, Any],
    index: int,
    cfg: Settings | None = None,
) -> tuple[ExtractedItem, list[str]]:
    """
    Convert one provider item into an ExtractedItem.

    Returns the item plus human-readable conversion notes (unreadable values
    that were defaulted). Missing thickness/material silently take the
    configured defaults; operation sub-objects are built only when the
    provider marked them `detected`.
    """
    cfg = cfg or get_settings()
    notes: list[str] = []
    row = int(to_number(raw.get("row")) or index + 1)

    length = _dimension(raw, _LENGTH_KEYS, "L")
    width = _dimension(raw, _WIDTH_KEYS, "W")
    if length is not None and length < 0:
        notes.append(f"Row {row}: negative length {length:g} treated as missing")
        length = None
    if width is not None and width < 0:
        notes.append(f"Row {row}: negative width {width:g} treated as missing")
        width = None

    thickness = to_number(_first(raw, _THICKNESS_KEYS))
    if thickness is None or thickness <= 0:
        thickness = cfg.default_thickness_mm

    raw_quantity = _first(raw, _QUANTITY_KEYS)
    quantity = to_number(raw_quantity)
    if quantity is None or quantity < 1:
        if raw_quantity is not None:
            notes.append(f"Row {row}: unreadable quantity {raw_quantity!r}, using 1")
        quantity = 1

    material = _first(raw, _MATERIAL_KEYS)
    label = _first(raw, _LABEL_KEYS)
    notes_text = raw.get("notes")
    confidence = to_number(raw.get("confidence"))

    item = ExtractedItem(
        row=row,
        label=str(label) if label is not None else None,
        length=length or 0.0,
        width=width or 0.0,
        thickness=thickness,
        quantity=int(round(quantity)),
        material=str(material).strip() if isinstance(material, str) and material.strip() else cfg.default_material,
        allow_rotation=_first(raw, _ROTATION_KEYS) is True,
        edge_banding=_edge_banding(raw),
        grooving=_grooving(raw),
        holes=_holes(raw),
        machining=_machining(raw),
        notes=notes_text.strip() if isinstance(notes_text, str) and notes_text.strip() else None,
        confidence=confidence if confidence is not None else cfg.default_confidence,
        field_confidence=_field_confidence(raw),
        warnings=[str(w) for w in _as_list(raw.get("warnings")) if w],
    )
    return item, notes


def normalize_items(
    raw_items: Iterable[dict[str, Any]],
    cfg: Settings | None = None,
) -> tuple[list[ExtractedItem], list[str]]:
    items: list[ExtractedItem] = []
    notes: list[str] = []
    for index, raw in enumerate(raw_items):
        try:
            item, item_notes = normalize_item(raw, index, cfg)
        except (ValidationError, TypeError, ValueError, OverflowError) as exc:
            reason = f"{exc.error_count()} invalid field(s)" if isinstance(exc, ValidationError) else str(exc)
            notes.append(f"Item {index + 1} skipped: unreadable item ({reason})")
            continue
        items.append(item)
        notes.extend(item_notes)
    return items, notes


# ---------------------------------------------------------------------------
# Count estimation
# ---------------------------------------------------------------------------

@dataclass
class ItemCountEstimate:
    estimated_count: int
    sections:        list[str] = field(default_factory=list)
    confidence:      float = 0.5


def parse_item_count_estimate(text: str) -> ItemCountEstimate:
    parsed = _try_json(strip_code_fence(text))
    if isinstance(parsed, dict):
        count = to_number(parsed.get("estimatedCount"))
        sections = [str(s) for s in _as_list(parsed.get("sections")) if isinstance(s, str) and s.strip()]
        return ItemCountEstimate(
            estimated_count=max(0, int(count or 0)),
            sections=sections,
            confidence=0.8,
        )

    match = _INTEGER.search(text)
    return ItemCountEstimate(
        estimated_count=int(match.group(0)) if match else 0,
        sections=[],
        confidence=0.5,
    )
