"""Logging setup for the control plane.

Every record carries a ``correlation_id`` (the scan cycle) and an ``event``
name. Modules log with ``extra={"event": ..., <fields>}``; the JSON
formatter gathers those fields under ``fields`` so downstream tooling can
filter on them without parsing the message text.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, TextIO

from config.settings import AppConfig, LogLevel

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation_id", "event"}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(event)s: %(message)s"


class CycleContextFilter(logging.Filter):
    """Default the cycle context attributes so format strings never fail."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = "-"
        if getattr(record, "event", None) is None:
            record.event = "log"
        return True


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line; extras go under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None) or "log",
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or "-",
        }

        fields = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            value = _scalar(value)
            if isinstance(value, (str, int, float, bool, type(None))):
                fields[key] = value
        if fields:
            payload["fields"] = fields

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def setup_logging(config: Optional[AppConfig] = None, stream: Optional[TextIO] = None) -> logging.Handler:
    """
    Install a single console handler on the root logger.

    ``LOG_FORMAT=json`` selects JSON lines; anything else selects the text
    format. Returns the installed handler.
    """
    level = config.log_level if config is not None else LogLevel.INFO
    fmt = os.getenv("LOG_FORMAT", "text").strip().lower()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level.value)
    handler.addFilter(CycleContextFilter())
    if fmt == "json":
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.value)
    root.addHandler(handler)
    return handler
