"""
Structured logging for the alert service.

    production   one JSON object per line; alert/dispatch extras become
                 top-level keys so log queries can filter on alert_id,
                 outcome or provider_code directly
    development  coloured single line: time, level, request id, caller,
                 alert id and step when present

Request-scoped context (request_id, caller_id, endpoint, alert_id) lives in
a ContextVar that the request middleware binds and resets per request.

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Dispatched", extra={"alert_id": alert_id, "device_count": 3})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

# Promoted to top-level JSON keys
EXTRA_FIELDS = (
    "alert_id", "user_id", "urgency", "step", "device_count",
    "outcome", "provider_code", "duration_ms", "status_code", "endpoint",
)

_QUIET_LIBRARIES = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "asyncpg")


def bind_request_context(**fields: Any) -> Token:
    """Bind context for the current request; pass the token to reset_request_context."""
    return _request_context.set({k: v for k, v in fields.items() if v is not None})


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx
        entry.update(_record_extras(record))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ctx = get_request_context()
        extras = _record_extras(record)

        tags = []
        if ctx.get("request_id"):
            tags.append(f"[{ctx['request_id'][:8]}]")
        if ctx.get("caller_id"):
            tags.append(f"<{ctx['caller_id']}>")
        alert_id = extras.get("alert_id") or ctx.get("alert_id")
        if alert_id:
            tags.append(f"alert={str(alert_id)[:8]}")
        if "step" in extras:
            tags.append(f"step={extras['step']}")

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{' ' + ' '.join(tags) if tags else ''} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging() -> None:
    """Install the environment's formatter on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
