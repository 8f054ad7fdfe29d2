"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.dependencies import AppSettings
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("coachie.health")


@router.get("/health")
async def health_check(settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check when a database is
    configured.
    """
    if settings.database_url is None:
        database = "in-memory"
        healthy = True
    else:
        healthy = False
        try:
            pool = get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            healthy = True
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)
        database = "connected" if healthy else "unreachable"

    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
