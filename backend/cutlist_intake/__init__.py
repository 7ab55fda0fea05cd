"""
cutlist_intake: resilient extraction of cutting-list items from documents.

Public API::

    from cutlist_intake import ExtractionOrchestrator, ExtractionPayload, build_orchestrator

    orchestrator = build_orchestrator()
    result = await orchestrator.extract(ExtractionPayload(image_b64), {"fileName": "job.png"})
"""

from cutlist_intake.llm.providers import ExtractionPayload
from cutlist_intake.schemas.extraction import ExtractionOptions, ExtractionResult, ExtractedItem
from cutlist_intake.services.orchestrator import ExtractionOrchestrator, build_orchestrator

__version__ = "0.1.0"

__all__ = [
    "ExtractedItem",
    "ExtractionOptions",
    "ExtractionOrchestrator",
    "ExtractionPayload",
    "ExtractionResult",
    "build_orchestrator",
]
