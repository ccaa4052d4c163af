"""Marginalia highlight sync engine.

This package fetches reading highlights from remote export APIs on a cron
schedule, merges them into deduplicated books and highlights, and exports
the stored books as Markdown notes.

Subpackages:
    adapters/  — Remote export clients (Readwise)
    exporters/ — File exporters (Markdown for Obsidian)
    storage/   — Storage interfaces plus in-memory and PostgreSQL backends
    sync/      — Coordinator, scheduler, merge engine, dedup, cron, tasks

Core modules:
    base            — Canonical data models and the HighlightProvider ABC
    errors          — Error taxonomy
    config_loader   — Load/validate/hot-reload sync_config.yaml
    settings_store  — Effective per-kind SyncConfig (database > env > default)
    service         — SyncService composition root
"""

from src.highlights.base import (
    Book,
    Highlight,
    HighlightProvider,
    HighlightRecord,
    SyncConfig,
    SyncState,
    SyncStatus,
)
from src.highlights.config_loader import EngineConfig, get_engine_config

__all__ = [
    "HighlightProvider",
    "HighlightRecord",
    "Book",
    "Highlight",
    "SyncConfig",
    "SyncState",
    "SyncStatus",
    "EngineConfig",
    "get_engine_config",
]
