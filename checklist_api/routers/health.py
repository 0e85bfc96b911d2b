"""Health check router.

Endpoints:
    GET /health - Overall status plus which optional integrations are configured
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from .. import __version__
from ..dependencies import Services, get_services

router = APIRouter()


@router.get("/health")
async def health_check(services: Services = Depends(get_services)) -> dict:
    """Basic health check - no auth required."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "signing": services.broker.configured,
        "payments": services.payments is not None,
    }
