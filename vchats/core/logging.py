"""
Structured logging for the relay and chat sessions.

Modules log through ``get_logger(__name__)`` and attach structured fields via
``extra={"extra_data": {...}}``; the JSON formatter flattens those fields into
the emitted record.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from vchats.core.config import get_settings

ROOT_LOGGER = "vchats"


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload.update(extra_data)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s - %(message)s%(fields)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        extra_data = getattr(record, "extra_data", None) or {}
        record.fields = "".join(f" {key}={value}" for key, value in extra_data.items())
        return super().format(record)


def setup_logging() -> logging.Logger:
    """Configure the ``vchats`` logger from settings and return it."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)
