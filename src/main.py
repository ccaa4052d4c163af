"""Marginalia API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.highlights.config_loader import get_engine_config
from src.highlights.service import build_sync_service
from src.highlights.storage import InMemoryHighlightStore, InMemorySettingsBackend
from src.highlights.storage.postgres import (
    PostgresHighlightStore,
    PostgresSettingsBackend,
    ensure_schema,
)
from src.routers import health, sync
from src.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("marginalia")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    engine_config = get_engine_config()
    logger.info(
        "Starting Marginalia API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    if settings.database_url:
        pool = await init_pool(settings)
        await ensure_schema(pool)
        highlight_store = PostgresHighlightStore(pool)
        settings_backend = PostgresSettingsBackend(pool)
    else:
        logger.warning("DATABASE_URL not set, using in-memory storage (data is not persisted)")
        highlight_store = InMemoryHighlightStore()
        settings_backend = InMemorySettingsBackend()

    http_client = httpx.AsyncClient(timeout=engine_config.http_timeout_seconds)
    service = build_sync_service(
        highlight_store,
        settings_backend,
        settings=settings,
        engine_config=engine_config,
        http_client=http_client,
    )
    await service.start()
    app.state.sync_service = service

    yield

    await service.stop()
    await http_client.aclose()
    await close_pool()
    logger.info("Marginalia API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Marginalia API",
        description=(
            "Reading highlight aggregation with scheduled sync from highlight "
            "export services, deduplicated books and highlights."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
