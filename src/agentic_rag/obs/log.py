"""JSON log formatting for the package logger."""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

_INTERNAL_KEYS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    }
)

_SENSITIVE_KEYS = frozenset({"api_key", "authorization", "secret", "token"})


class JSONFormatter(logging.Formatter):
    """Formats records as one JSON object per line, extras included."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _INTERNAL_KEYS or key.lower() in _SENSITIVE_KEYS:
                continue
            payload[key] = value

        if record.exc_info:
            payload["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(payload, default=str)


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a JSON stdout handler to the `agentic_rag` logger once."""
    log = logging.getLogger("agentic_rag")
    log.setLevel(level if isinstance(level, int) else level.upper())
    if not any(isinstance(h.formatter, JSONFormatter) for h in log.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        log.addHandler(handler)
    return log
