"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the SOS subsystem
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        EmergencyAPIError,
        NotFoundError,
        NoContactsError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", alert_id="42")

Taxonomy:

    Exception          HTTP   Raised when
    ─────────────────  ────   ─────────────────────────────────────────────
    ValidationError    400    required input missing / malformed
    NoContactsError    400    SOS triggered with no emergency contacts
    NotFoundError      404    unknown alert id / tracking code
    ConflictError      409    tracking code collision, duplicate trigger
    ProviderError      502    messaging provider refused a send (captured
                              per contact, never surfaces as a response)
    PersistenceError   500    store unavailable / query failed
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

class EmergencyAPIError(Exception):
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


class ValidationError(EmergencyAPIError):
    """Input validation failed (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class NoContactsError(EmergencyAPIError):
    """Owner has no emergency contacts to notify (400)."""

    def __init__(self, owner_id: str):
        super().__init__(
            message="No emergency contacts found. Please add contacts first.",
            status_code=400,
            error_code="NO_CONTACTS",
            details={"owner_id": owner_id},
        )


class NotFoundError(EmergencyAPIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ConflictError(EmergencyAPIError):
    """Uniqueness or concurrency conflict (409)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONFLICT",
            details=details,
        )


class ProviderError(EmergencyAPIError):
    """Messaging provider rejected or failed a send (502)."""

    def __init__(self, provider: str, message: str = "", **details: Any):
        super().__init__(
            message=message or f"Provider '{provider}' failed",
            status_code=502,
            error_code="PROVIDER_ERROR",
            details={"provider": provider, **details},
        )


class PersistenceError(EmergencyAPIError):
    """Persistent store unavailable or query failed (500)."""

    def __init__(self, operation: str, message: str = ""):
        super().__init__(
            message=f"Store operation '{operation}' failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation},
        )


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
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
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

    @app.exception_handler(EmergencyAPIError)
    async def handle_emergency_error(request: Request, exc: EmergencyAPIError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.warning("Request validation failed: %s", errors)
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = (
            f"Invalid request: {field} {first.get('msg', '')}".strip()
            if field else "Invalid request"
        )
        return _build_error_response(
            400, "VALIDATION_ERROR", message,
            {"errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
                for e in errors
            ]},
            request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
