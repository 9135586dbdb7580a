import logging
import json
import os
import sys
from datetime import datetime, timezone
from typing import Optional


# Reserved LogRecord attributes that cannot be overwritten
_RESERVED_ATTRS = {
    "name", "msg", "args", "levelname", "levelno",
    "pathname", "filename", "module", "exc_info",
    "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread",
    "threadName", "processName", "process", "message",
    "taskName",
}

# Raw credentials never reach a log line
_REDACTED_FIELDS = {"api_key", "x_api_key", "authorization", "password"}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per log line.

    Fields passed through `extra=` are merged into the object. Credential
    fields are masked; values that are not JSON-serializable go through
    str().
    """

    def format(self, record: logging.LogRecord) -> str:

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field, value in record.__dict__.items():

            if field.startswith("_") or field in _RESERVED_ATTRS:
                continue

            if field.lower() in _REDACTED_FIELDS:
                value = "***"

            # Never shadow the base fields
            payload[f"extra_{field}" if field in payload else field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Route the root logger to stdout (and optionally a file) as JSON."""

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    root_logger.handlers = []

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)

    # Silence noisy libs
    for noisy in ("urllib3", "httpx", "openai", "posthog", "qdrant_client"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
