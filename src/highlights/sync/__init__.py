"""Highlight sync infrastructure for Marginalia.

Modules:
    coordinator — Single-flight run lifecycle (guard → job → status/cursor)
    jobs        — Work done inside a run: provider import or Markdown export
    scheduler   — Cron timer per sync kind (APScheduler)
    merge       — Idempotent upsert of records into books/highlights
    dedup       — Dedup keys, text normalization, upsert query builder
    cron        — 5-field cron parsing, next-fire computation, presets
    state       — SyncStatus persistence
    tasks       — Typed background tasks with observable completion
"""
