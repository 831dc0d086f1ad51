"""Structured logging configuration for the QA access core.

JSON output in production, human-readable output elsewhere. Both formats
carry the request-scoped fields (instance_id, user_id, request_id) held in
contextvars; the access guard fills instance_id and user_id once a request
is authorized.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Dict, Optional

_instance_id: ContextVar[Optional[str]] = ContextVar("instance_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_log_context(
    instance_id: Optional[str] = None,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
):
    """Set contextual logging fields for the current async context."""
    if instance_id is not None:
        _instance_id.set(instance_id)
    if user_id is not None:
        _user_id.set(user_id)
    if request_id is not None:
        _request_id.set(request_id)


def new_request_id(incoming: Optional[str] = None) -> str:
    """Bind *incoming* (or a fresh id) as the request id for the current context."""
    request_id = (incoming or "").strip()[:64] or uuid.uuid4().hex[:16]
    _request_id.set(request_id)
    return request_id


def clear_log_context():
    """Clear all contextual logging fields."""
    _instance_id.set(None)
    _user_id.set(None)
    _request_id.set(None)


def get_log_context() -> Dict[str, str]:
    """Return the non-empty context fields."""
    fields = {
        "instance_id": _instance_id.get(),
        "user_id": _user_id.get(),
        "request_id": _request_id.get(),
    }
    return {k: v for k, v in fields.items() if v}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(get_log_context())

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable log formatter with context fields for development."""

    _SHORT = {"instance_id": "instance", "user_id": "user", "request_id": "req"}

    def format(self, record: logging.LogRecord) -> str:
        msg = " ".join([
            f"[{self.formatTime(record, self.datefmt)}]",
            f"{record.levelname:8s}",
            f"{record.name}:",
            record.getMessage(),
        ])

        ctx = get_log_context()
        if ctx:
            msg += " [" + ", ".join(f"{self._SHORT[k]}={v}" for k, v in ctx.items()) + "]"

        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(environment: str = "development", log_level: str = "INFO"):
    """Configure structured logging for the application.

    Args:
        environment: "production" for JSON output, anything else for human-readable.
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    # Quiet noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
