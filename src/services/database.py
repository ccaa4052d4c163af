"""PostgreSQL connection pool.

Uses ``asyncpg`` directly; the pool is created once at app startup and
handed to the PostgreSQL storage backends.
"""

from __future__ import annotations

import logging

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("marginalia.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


def has_pool() -> bool:
    return _pool is not None
