"""Storage collaborators for the highlight sync engine.

    base      — HighlightStore / SettingsBackend interfaces
    memory    — dict-backed implementations (tests, local development)
    postgres  — asyncpg implementations (production)
"""

from src.highlights.storage.base import HighlightStore, SettingsBackend
from src.highlights.storage.memory import InMemoryHighlightStore, InMemorySettingsBackend

__all__ = [
    "HighlightStore",
    "SettingsBackend",
    "InMemoryHighlightStore",
    "InMemorySettingsBackend",
]
