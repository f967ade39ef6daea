"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        PlateAlertError,
        NotFoundError,
        ValidationError,
        InvalidTransition,
        CredentialError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", alert_id="8f0c...")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class PlateAlertError(Exception):
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


class NotFoundError(PlateAlertError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(PlateAlertError):
    """Malformed request — rejected before any mutation (422)."""

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


class ForbiddenError(PlateAlertError):
    """Caller does not own the resource (403)."""

    def __init__(self, resource: str, caller_id: str, **identifiers: Any):
        super().__init__(
            message=f"Caller may not access this {resource}",
            status_code=403,
            error_code="FORBIDDEN",
            details={"resource": resource, "caller_id": caller_id, **identifiers},
        )


class InvalidTransition(PlateAlertError):
    """Lifecycle lattice violation — no side effects applied (409)."""

    def __init__(self, current: str, requested: str, **identifiers: Any):
        super().__init__(
            message=f"Cannot move from '{current}' to '{requested}'",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"current": current, "requested": requested, **identifiers},
        )
        self.current = current
        self.requested = requested


class CredentialError(PlateAlertError):
    """Push credential could not be obtained — dispatch aborted (503)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=f"Push credential unavailable: {message}",
            status_code=503,
            error_code="CREDENTIAL_ERROR",
            details=details,
        )


class DeliveryError(PlateAlertError):
    """
    A single device delivery failed (502).

    Never aborts sibling deliveries; the dispatcher folds it into the
    per-device report.
    """

    def __init__(
        self,
        message: str,
        *,
        outcome: str,
        provider_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            status_code=502,
            error_code="DELIVERY_ERROR",
            details={
                "outcome": outcome,
                "provider_code": provider_code,
                "http_status": http_status,
            },
        )
        self.outcome = outcome
        self.provider_code = provider_code
        self.http_status = http_status


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(PlateAlertError)
    async def handle_plate_alert_error(request: Request, exc: PlateAlertError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, None, request,
        )
