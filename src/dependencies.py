"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.highlights.service import SyncService


def get_sync_service(request: Request) -> SyncService:
    """Return the SyncService wired during app startup (see ``src.main.lifespan``)."""
    service: SyncService | None = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service not initialized")
    return service


# Annotated shortcuts for route signatures
SyncServiceDep = Annotated[SyncService, Depends(get_sync_service)]
