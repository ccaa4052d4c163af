"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.services.database import get_pool, has_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("marginalia.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check when PostgreSQL is
    configured, and reports whether each sync schedule is alive.
    """
    settings = get_settings()
    database = "in-memory"
    healthy = True
    if has_pool():
        try:
            async with get_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            database = "connected"
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)
            database = "unreachable"
            healthy = False

    service = getattr(request.app.state, "sync_service", None)
    schedulers = {kind: service.is_running(kind) for kind in service.kinds} if service else {}

    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": database,
        "schedulers": schedulers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
