"""
Structured logging for the web app.

JSON lines in production, rich console output during development.
Call configure_logging() once at startup; modules use get_logger().
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, Union

from rich.logging import RichHandler

from .config import Settings

ROOT_LOGGER_NAME = "coaching"


class JSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line.

    Each entry carries timestamp (ISO-8601, UTC), level, logger_name,
    message, any ``extra`` fields supplied by the caller and, when
    present, the formatted exception.
    """

    _STANDARD_ATTRS = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Union[str, Dict[str, str]]] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra_fields = {
            key: str(value)
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS
        }
        if extra_fields:
            entry["extra"] = extra_fields

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


def configure_logging(settings: Settings) -> logging.Logger:
    """Attach a single handler to the application root logger."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(settings.LOG_LEVEL.upper())
    root.propagate = False

    # Reconfiguring replaces the handler rather than stacking a second one.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if settings.LOG_FORMAT.lower() == "console":
        handler: logging.Handler = RichHandler(rich_tracebacks=True, show_path=False)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    return root


def get_logger(name: str) -> logging.Logger:
    """Child of the application root logger, e.g. ``coaching.gate``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
