"""
Prompt text sent to extraction providers.

Only the base instructions live here; range- and section-scoped suffixes are
built by processing/chunking.py and appended by the orchestrator.
"""

EXTRACTION_SYSTEM_PROMPT = (
    "You read cutting lists for panel manufacturing (tables, handwritten sheets, "
    "CAD exports) and transcribe every part into structured JSON. You never invent "
    "parts and you never summarise. Dimensions are millimetres."
)

EXTRACTION_PROMPT = """
Extract EVERY part listed in this document.

Return ONLY a JSON object of the form:
{"items": [
  {
    "row": 1,
    "label": "Side panel",
    "length": 720,
    "width": 560,
    "thickness": 18,
    "quantity": 2,
    "material": "white melamine",
    "allowRotation": false,
    "edgeBanding": {"detected": true, "L1": true, "L2": false, "W1": true, "W2": false},
    "grooving": {"detected": false},
    "drilling": {"detected": false},
    "cncOperations": {"detected": false},
    "notes": null,
    "confidence": 0.95,
    "fieldConfidence": {"length": 0.98, "width": 0.97, "quantity": 0.9}
  }
]}

Rules:
- length is the longer side, width the shorter side.
- If thickness or material is not written, omit the field.
- confidence is your certainty in [0, 1] for the whole row.
- Do not wrap the JSON in prose.
""".strip()

ITEM_COUNT_PROMPT = """
Count the TOTAL number of numbered items/rows in this document.

Instructions:
1. Scan ALL columns (left, middle, right)
2. Scan ALL sections (section headers like "CARCASES", "DOORS", etc.)
3. Count every numbered item (1., (1), circled numbers, etc.)
4. If items aren't numbered, count each line with dimensions

Return ONLY a JSON object: {"estimatedCount": NUMBER, "sections": ["section1", "section2"]}
""".strip()
