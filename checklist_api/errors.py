"""Error taxonomy and JSON error rendering for the Checklist API.

Every error a handler raises on purpose is an ``ApiError`` subclass carrying
its HTTP status, a human-readable message and a stable machine code. The
exception handlers registered here turn them into the common body shape::

    {"error": "...", "code": "...", "details": {...}}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("checklist_api.errors")


class ApiError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        error: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(error)
        self.error = error
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class ValidationError(ApiError):
    """Missing or malformed client input."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthError(ApiError):
    """Missing/invalid credentials (401) or insufficient role (403)."""

    status_code = 401
    default_code = "UNAUTHENTICATED"

    @classmethod
    def forbidden(cls, error: str = "Forbidden", **kwargs: Any) -> "AuthError":
        kwargs.setdefault("code", "FORBIDDEN")
        return cls(error, status_code=403, **kwargs)


class NotFoundError(ApiError):
    status_code = 404
    default_code = "NOT_FOUND"


class UpstreamError(ApiError):
    """An external provider (Drive, Mercado Pago, Firestore) failed."""

    status_code = 500
    default_code = "UPSTREAM_ERROR"


class ConfigError(ApiError):
    """A required secret or credential is missing or unreadable.

    Raised by ``load_config`` at startup (fatal) and by components whose
    optional configuration was left unset (HTTP 500 at request time).
    """

    status_code = 500
    default_code = "CONFIG_ERROR"


def error_response(
    status_code: int,
    *,
    error: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"error": error, "code": code}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


def register_exception_handlers(app: FastAPI, *, debug: bool = False) -> None:
    """Install handlers for ApiError, request validation and uncaught errors."""

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.error}")
        return error_response(exc.status_code, error=exc.error, code=exc.code, details=exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item not in ("body", "query", "form"))
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, error=message, code="VALIDATION_ERROR")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        # Log full error internally, never return stack traces
        logger.exception(f"Unhandled exception on {request.url.path}")
        if debug:
            return error_response(
                500,
                error=str(exc),
                code="INTERNAL_ERROR",
                details={"type": type(exc).__name__},
            )
        return error_response(500, error="Internal server error", code="INTERNAL_ERROR")
