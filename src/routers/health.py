"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.dependencies import AppSettings, Registry

router = APIRouter(tags=["system"])
logger = logging.getLogger("fitsync.health")


@router.get("/health")
async def health_check(settings: AppSettings, registry: Registry) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports which integrations have credentials configured.
    """
    configured = [i.slug for i in registry.configured()]
    return {
        "status": "healthy" if configured else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "document_store": settings.document_store,
        "integrations": configured,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
