"""Structured logging with issuance session context.

This module provides structured JSON logging with:
- Session and subscription IDs attached to every record emitted during a saga
- Consistent log formatting
- Masking helpers for addresses and credentials
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
subscription_id_var: ContextVar[Optional[str]] = ContextVar("subscription_id", default=None)

_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "session_id",
    "subscription_id",
})


class SessionContextFilter(logging.Filter):
    """Logging filter that adds issuance context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_id_var.get()
        record.subscription_id = subscription_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "session_id", None):
            log_data["session_id"] = record.session_id
        if getattr(record, "subscription_id", None):
            log_data["subscription_id"] = record.subscription_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(session_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SessionContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(SessionContextFilter())
        root_logger.addHandler(file_handler)


class LogContext:
    """Context manager binding session context for the records it encloses."""

    def __init__(self, session_id: Optional[str] = None, subscription_id: Optional[str] = None):
        self.session_id = session_id
        self.subscription_id = subscription_id
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.session_id:
            self._tokens.append((session_id_var, session_id_var.set(self.session_id)))
        if self.subscription_id:
            self._tokens.append((subscription_id_var, subscription_id_var.set(self.subscription_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def mask(value: Optional[str], keep: int = 8) -> str:
    """Shorten an address or credential for logs: `addr_tes...x9k2`."""
    if not value:
        return "<none>"
    if len(value) <= keep + 4:
        return "***"
    return f"{value[:keep]}...{value[-4:]}"
