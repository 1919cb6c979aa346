"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the alert lifecycle
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        EmergencyPlatformError,
        NotFoundError,
        ValidationError,
        InvalidStateError,
        PersistenceError,
        register_error_handlers,
    )

    raise NotFoundError("EmergencyAlert", id="alert_1a2b3c")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyPlatformError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(EmergencyPlatformError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(EmergencyPlatformError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class InvalidStateError(EmergencyPlatformError):
    """Transition not allowed from the alert's current status (409)."""

    def __init__(self, alert_id: str, current: str, attempted: str):
        super().__init__(
            message=f"Cannot {attempted} alert {alert_id} in status '{current}'",
            status_code=409,
            error_code="INVALID_STATE",
            details={
                "alert_id": alert_id,
                "current_status": current,
                "attempted": attempted,
            },
        )


class PersistenceError(EmergencyPlatformError):
    """Ledger append or query failed (503)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Ledger {operation} failed: {message}",
            status_code=503,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, **details},
        )


class DeliveryError(EmergencyPlatformError):
    """A single channel/recipient notification failed (502)."""

    def __init__(self, alert_id: str, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Alert {alert_id} delivery failed on {channel}: {message}",
            status_code=502,
            error_code="DELIVERY_ERROR",
            details={"alert_id": alert_id, "channel": channel, **details},
        )


class SchedulerError(EmergencyPlatformError):
    """Escalation timer misuse, e.g. arming an already-armed alert (500)."""

    def __init__(self, alert_id: str, message: str):
        super().__init__(
            message=message,
            status_code=500,
            error_code="SCHEDULER_ERROR",
            details={"alert_id": alert_id},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Envelope
# ═══════════════════════════════════════════════════════════════════════════

def error_body(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    """
    {"error": {"code", "message", "status", "details"?, "path"?, "method"?}}

    path/method are only echoed back outside production.
    """
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return {"error": error}


def _respond(exc: EmergencyPlatformError, request: Request) -> JSONResponse:
    headers = None
    if isinstance(exc, PersistenceError):
        # the ledger is the only thing that can 503; clients may retry shortly
        headers = {"Retry-After": str(int(settings.ESCALATION_RETRY_SECONDS))}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status_code, exc.error_code, exc.message, exc.details, request),
        headers=headers,
    )


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Map domain, request-validation and unexpected errors onto the envelope."""

    @app.exception_handler(EmergencyPlatformError)
    async def handle_platform_error(request: Request, exc: EmergencyPlatformError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "%s %s failed [%s]: %s",
            request.method, request.url.path, exc.error_code, exc.message,
            extra={
                "status_code": exc.status_code,
                "alert_id": exc.details.get("alert_id") or exc.details.get("id"),
            },
        )
        return _respond(exc, request)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        logger.warning("Rejected request body for %s: %s", request.url.path, problems)
        details: Dict[str, Any] = {"errors": problems}
        if problems:
            details["field"] = problems[0]["field"]
        return JSONResponse(
            status_code=422,
            content=error_body(422, "VALIDATION_ERROR", "Request validation failed", details, request),
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception on %s %s: %s",
            request.method, request.url.path, exc, exc_info=exc,
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)}
            if settings.DEBUG else None
        )
        return JSONResponse(
            status_code=500,
            content=error_body(500, "INTERNAL_ERROR", message, details, request),
        )
