"""Persistence of SyncStatus (and the incremental cursor it carries).

The status of each sync kind is stored as JSON in the settings backend under
``sync.<kind>.status`` so it survives restarts and can be polled by the UI.
"""

from __future__ import annotations

import json
import logging

from src.highlights.base import SyncStatus
from src.highlights.storage.base import SettingsBackend

logger = logging.getLogger("marginalia.highlights.sync.state")


def status_key(kind: str) -> str:
    return f"sync.{kind}.status"


class SyncStateRepository:
    """Load and save the SyncStatus of one sync kind."""

    def __init__(self, backend: SettingsBackend, kind: str) -> None:
        self._backend = backend
        self._kind = kind

    @property
    def kind(self) -> str:
        return self._kind

    async def load(self) -> SyncStatus:
        """Return the persisted status, or a fresh idle status if none (or unreadable)."""
        raw = await self._backend.get(status_key(self._kind))
        if not raw:
            return SyncStatus()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable sync status for %s: %r", self._kind, raw[:200])
            return SyncStatus()
        if not isinstance(data, dict):
            logger.warning("Discarding non-object sync status for %s", self._kind)
            return SyncStatus()
        return SyncStatus.from_json(data)

    async def save(self, status: SyncStatus) -> None:
        await self._backend.set(status_key(self._kind), json.dumps(status.to_json()))
