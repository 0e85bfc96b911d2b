"""Checklist API - Main Application.

FastAPI application serving the checklist mobile app and the web portal.
Handles photo uploads, signed photo access, Mercado Pago checkout/webhooks
and portal access management.

Usage:
    uvicorn checklist_api.main:create_app --factory --host 0.0.0.0 --port 3000

Or via the ``checklist-api`` console script.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import AppConfig, load_config
from .dependencies import Services, build_services
from .errors import register_exception_handlers
from .middleware.rate_limit import setup_rate_limiting
from .routers import files, health, payments, portal
from .utils.security_logger import security_logger

logger = logging.getLogger("checklist_api.main")


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application.

    Args:
        config: Resolved configuration; read from the environment when omitted
        services: Pre-built provider clients; built at startup when omitted

    Raises:
        ConfigError: configuration is missing or malformed
    """
    config = config or (services.config if services else load_config())
    configure_logging(config.debug)
    security_logger.configure(config.security_log_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: construct provider clients once."""
        logger.info(f"Starting Checklist API v{__version__}")
        if getattr(app.state, "services", None) is None:
            try:
                app.state.services = build_services(config)
            except Exception as e:
                logger.error(f"Startup failed: {e}")
                raise
        logger.info(f"Public base URL: {config.public_base_url}")
        yield
        logger.info("Shutting down Checklist API")

    if config.debug:
        app = FastAPI(title="Checklist API", version=__version__, lifespan=lifespan)
    else:
        # Production: disable docs endpoints
        app = FastAPI(
            title="Checklist API",
            version=__version__,
            lifespan=lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
    app.state.config = config
    app.state.services = services

    # =========================================================================
    # MIDDLEWARE (last added runs first)
    # =========================================================================

    setup_rate_limiting(app, enabled=config.rate_limit_enabled)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        if "server" in response.headers:
            del response.headers["server"]
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests; query strings are left out since they carry capabilities."""
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)")
        return response

    register_exception_handlers(app, debug=config.debug)

    # =========================================================================
    # ROUTERS
    # =========================================================================

    app.include_router(health.router, tags=["Health"])
    app.include_router(files.router, tags=["Files"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(portal.router, tags=["Portal"])

    @app.get("/")
    async def root():
        """Root endpoint - API info."""
        return {"name": "Checklist API", "version": __version__, "status": "running"}

    return app


def run() -> None:
    """Console entry point: resolve config (fatal on error) and serve."""
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=app.state.config.port)
