"""Rate limiting middleware using slowapi.

Provides per-endpoint rate limits to prevent abuse.

Default limits:
- Global: 100 req/min per IP
- Uploads and checkout creation: 30 req/min (each hits Drive / Mercado Pago)
- Portal writes: 10 req/min
- Mercado Pago webhook: never limited, it must always be acknowledged

The limiter object is shared by every app in the process, but whether it
applies is decided per app from ``app.state.rate_limit_enabled``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import FastAPI, Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ..errors import error_response
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

logger = logging.getLogger("checklist_api.rate_limit")


class AppScopedLimiter(Limiter):
    """Limiter that skips checks for apps built with rate limiting off."""

    def _check_request_limit(self, request: Request, *args: Any, **kwargs: Any) -> None:
        if not getattr(request.app.state, "rate_limit_enabled", True):
            # Decorated routes read view_rate_limit after the check
            request.state.view_rate_limit = None
            return
        super()._check_request_limit(request, *args, **kwargs)


limiter = AppScopedLimiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],  # Global default
    storage_uri="memory://",  # In-memory storage (single instance)
)


# Usage: @rate_limit_upload on upload endpoints (route must accept `request`)
rate_limit_upload = limiter.limit("30/minute")
rate_limit_checkout = limiter.limit("30/minute")
rate_limit_portal_write = limiter.limit("10/minute")


def rate_limit_exempt(func: Callable) -> Callable:
    """Register ``func`` as exempt from the global limit and return it unwrapped."""
    limiter.exempt(func)
    return func


def setup_rate_limiting(app: FastAPI, *, enabled: bool = True) -> None:
    """Configure rate limiting on the FastAPI app."""
    app.state.limiter = limiter
    app.state.rate_limit_enabled = enabled
    app.add_exception_handler(RateLimitExceeded, _custom_rate_limit_handler)
    app.add_middleware(SlowAPIMiddleware)
    logger.info(f"Rate limiting {'enabled' if enabled else 'disabled'}")


async def _custom_rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Log the event and return 429 with Retry-After."""
    security_logger.rate_limit_exceeded(
        ip=get_client_ip(request),
        path=request.url.path,
        limit=str(exc.detail),
    )
    return error_response(
        429,
        error="Too many requests",
        code="RATE_LIMIT_EXCEEDED",
        details={"limit": str(exc.detail)},
        headers={"Retry-After": "60"},
    )
