"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit one structured log line as compact JSON."""
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=False, sort_keys=True))


def configure_logging(level: str = "INFO", stream: Optional[Any] = None) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=stream)


def format_progress(accepted: int, quota: Optional[int]) -> str:
    """Render per-shop progress as ``accepted/quota`` (``∞`` when unbounded)."""
    return f"{accepted}/{'∞' if quota is None else quota}"
