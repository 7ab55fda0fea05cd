"""
Logging setup for the extraction pipeline.

Every module logs through its own `logging.getLogger(__name__)` using the
"Component | key=value" register. `log_event` renders the structured
{level, event, metadata} record consumed by log shippers onto the same
stdlib logger, so lifecycle events stay greppable next to ordinary lines.
"""

from __future__ import annotations

import logging
from typing import Any

from cutlist_intake.core.config import Settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(cfg: Settings) -> None:
    """Install the root handler. Safe to call more than once."""
    level = logging.DEBUG if cfg.debug else getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_FORMAT)
    logging.getLogger("cutlist_intake").setLevel(level)


def log_event(logger: logging.Logger, level: int, event: str, **metadata: Any) -> None:
    """
    Emit one structured event line.

        log_event(logger, logging.INFO, "extraction.started", request_id=rid)
        → "extraction.started | request_id=ab12..."
    """
    if not logger.isEnabledFor(level):
        return
    if metadata:
        rendered = " ".join(f"{key}={metadata[key]}" for key in sorted(metadata))
        logger.log(level, "%s | %s", event, rendered, extra={"event": event, "metadata": metadata})
    else:
        logger.log(level, "%s", event, extra={"event": event, "metadata": {}})
