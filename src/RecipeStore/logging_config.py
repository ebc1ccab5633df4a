"""
Structured Logging Utilities

Centralises logging setup for the recipe store.  Modules log through
``logging.getLogger(__name__)`` and attach context with ``extra=`` (for
example ``stage``, ``recipe_hash``, ``dataset``); this module decides how
those records are rendered: as JSON lines for machine consumption, or as a
compact console format.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .settings import LoggingSettings

__all__ = ["JSONFormatter", "setup_logging"]

ROOT_LOGGER = "RecipeStore"

_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _RESERVED}


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record.

    Examples:
        >>> formatter = JSONFormatter()
        >>> isinstance(formatter.format(logging.makeLogRecord({'msg': 'test'})), str)
        True
    """

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj: Dict[str, Any] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
        }
        log_obj.update(_extra_fields(record))
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


def setup_logging(settings: Optional[LoggingSettings] = None) -> logging.Logger:
    """Configure the ``RecipeStore`` logger; safe to call repeatedly."""

    settings = settings or LoggingSettings()
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(settings.level_int())
    for handler in list(logger.handlers):
        if getattr(handler, "_recipestore_handler", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if settings.emit_json_logs else logging.Formatter(_CONSOLE_FORMAT))
    handler._recipestore_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
