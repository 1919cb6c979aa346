"""
Structured logging for the emergency alert service.

    production   → one JSON object per line, lifecycle fields grouped
                   under "alert" so log search can pivot on alert_id
    development  → coloured single line:  08:00:01 WARNING  [3f2a9c1d] <alert_…/sms> …

Request-scoped context (request_id, client_ip, endpoint) is stored in a
ContextVar by RequestLoggingMiddleware and attached to every record
emitted while that request is being served, including records from
background fan-outs spawned by it.

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.warning("Alert escalated", extra={"alert_id": alert.id, "action": "escalate"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# extra= keys describing the alert being processed
ALERT_FIELDS = ("alert_id", "action", "severity", "channel", "recipient_id", "actor_id")
# extra= keys describing the HTTP exchange
HTTP_FIELDS = ("status_code", "endpoint", "duration_ms")

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "sqlalchemy.engine", "aiosqlite")


def set_request_context(**kwargs: Any) -> None:
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _collect(record: logging.LogRecord, keys) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


# ═══════════════════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": settings.APP_NAME,
        }

        alert = _collect(record, ALERT_FIELDS)
        if alert:
            entry["alert"] = alert
        entry.update(_collect(record, HTTP_FIELDS))

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}
            if settings.DEBUG:
                entry["exception"]["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured console output for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35;1m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        parts = [f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"]

        request_id = get_request_context().get("request_id")
        if request_id:
            parts.append(f"[{request_id[:8]}]")

        alert_id = getattr(record, "alert_id", None)
        if alert_id:
            channel = getattr(record, "channel", None)
            parts.append(f"<{alert_id}/{channel}>" if channel else f"<{alert_id}>")

        parts.append(f"{record.name}: {record.getMessage()}")
        line = " ".join(parts)

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            line += f"\n  {type(exc).__name__}: {exc}"
        return line


# ═══════════════════════════════════════════════════════════════════════════
# Setup
# ═══════════════════════════════════════════════════════════════════════════

def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    Defaults: level from LOG_LEVEL, JSON output in production.
    Calling it again replaces the handler rather than stacking another.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
