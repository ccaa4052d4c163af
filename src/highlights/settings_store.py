"""Effective sync settings per sync kind.

Each field of a SyncConfig is resolved independently:

    1. value stored in the settings backend ("database")
    2. environment variable via ``src.config.Settings`` ("environment")
    3. built-in default ("default")

For the ``readwise`` kind the environment fallbacks are
``READWISE_SYNC_ENABLED``, ``READWISE_TOKEN`` and ``READWISE_SYNC_SCHEDULE``;
the ``obsidian`` export kind reads ``OBSIDIAN_SYNC_ENABLED``,
``OBSIDIAN_SYNC_SCHEDULE`` and ``OBSIDIAN_SYNC_DESTINATION``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from src.config import Settings, get_settings
from src.highlights.base import SyncConfig
from src.highlights.config_loader import EngineConfig, get_engine_config
from src.highlights.storage.base import SettingsBackend
from src.highlights.sync.cron import describe_schedule, validate_cron

logger = logging.getLogger("marginalia.highlights.settings")

SOURCE_DATABASE = "database"
SOURCE_ENVIRONMENT = "environment"
SOURCE_DEFAULT = "default"

_FIELDS = ("enabled", "schedule", "credential", "destination")
_TRUE_VALUES = {"1", "true", "yes", "on"}


def mask_credential(credential: str) -> str:
    """Mask a credential for display: ``abcd****wxyz``, or ``****`` if 8 chars or fewer."""
    if not credential:
        return ""
    if len(credential) <= 8:
        return "****"
    return f"{credential[:4]}****{credential[-4:]}"


def setting_key(kind: str, name: str) -> str:
    return f"sync.{kind}.{name}"


@dataclass(frozen=True)
class SyncConfigInfo:
    """SyncConfig for display: credential masked, with the source of each field."""

    kind: str
    enabled: bool
    enabled_source: str
    schedule: str
    schedule_source: str
    schedule_description: str
    has_credential: bool
    credential_masked: str
    credential_source: str
    destination: str | None
    destination_source: str


class SyncSettingsStore:
    """Resolve, validate and persist the SyncConfig of one sync kind."""

    def __init__(
        self,
        backend: SettingsBackend,
        kind: str,
        settings: Settings | None = None,
        engine_config: EngineConfig | None = None,
    ) -> None:
        self._backend = backend
        self._kind = kind
        self._settings = settings or get_settings()
        self._default_schedule = (engine_config or get_engine_config()).schedule.default

    @property
    def kind(self) -> str:
        return self._kind

    # ── Resolution ──

    def _env_value(self, name: str) -> Any:
        env_attr = {
            "enabled": f"{self._kind}_sync_enabled",
            "schedule": f"{self._kind}_sync_schedule",
            "credential": f"{self._kind}_token",
            "destination": f"{self._kind}_sync_destination",
        }[name]
        value = getattr(self._settings, env_attr, None)
        if value is None or value == "":
            return None
        return value

    async def _resolve(self, name: str, default: Any) -> tuple[Any, str]:
        stored = await self._backend.get(setting_key(self._kind, name))
        if stored is not None:
            if name == "enabled":
                return stored.strip().lower() in _TRUE_VALUES, SOURCE_DATABASE
            return stored, SOURCE_DATABASE
        env = self._env_value(name)
        if env is not None:
            return env, SOURCE_ENVIRONMENT
        return default, SOURCE_DEFAULT

    async def _resolve_all(self) -> dict[str, tuple[Any, str]]:
        defaults = {
            "enabled": False,
            "schedule": self._default_schedule,
            "credential": "",
            "destination": None,
        }
        return {name: await self._resolve(name, defaults[name]) for name in _FIELDS}

    async def get_config(self) -> SyncConfig:
        values = await self._resolve_all()
        return SyncConfig(
            enabled=bool(values["enabled"][0]),
            schedule=str(values["schedule"][0]),
            credential=str(values["credential"][0] or ""),
            destination=values["destination"][0],
        )

    async def get_config_info(self) -> SyncConfigInfo:
        values = await self._resolve_all()
        credential = str(values["credential"][0] or "")
        schedule = str(values["schedule"][0])
        return SyncConfigInfo(
            kind=self._kind,
            enabled=bool(values["enabled"][0]),
            enabled_source=values["enabled"][1],
            schedule=schedule,
            schedule_source=values["schedule"][1],
            schedule_description=describe_schedule(schedule),
            has_credential=bool(credential),
            credential_masked=mask_credential(credential),
            credential_source=values["credential"][1],
            destination=values["destination"][0],
            destination_source=values["destination"][1],
        )

    # ── Mutation ──

    async def save(
        self,
        enabled: bool | None = None,
        schedule: str | None = None,
        credential: str | None = None,
        destination: str | None = None,
    ) -> SyncConfig:
        """Persist overrides; ``None`` (or an empty credential) leaves a field unchanged.

        Raises:
            ConfigurationError: If ``schedule`` is not a valid cron expression.
                                Nothing is written in that case.
        """
        if schedule is not None:
            schedule = schedule.strip()
            validate_cron(schedule)

        if enabled is not None:
            await self._backend.set(setting_key(self._kind, "enabled"), "true" if enabled else "false")
        if schedule is not None:
            await self._backend.set(setting_key(self._kind, "schedule"), schedule)
        if credential:
            await self._backend.set(setting_key(self._kind, "credential"), credential.strip())
        if destination is not None:
            await self._backend.set(setting_key(self._kind, "destination"), destination)

        logger.info(
            "Saved %s sync settings (enabled=%s, schedule=%s, credential=%s)",
            self._kind,
            enabled,
            schedule,
            "updated" if credential else "unchanged",
        )
        return await self.get_config()

    async def clear(self) -> SyncConfig:
        """Delete every stored override so environment/default values apply again."""
        for name in _FIELDS:
            await self._backend.delete(setting_key(self._kind, name))
        logger.info("Cleared stored %s sync settings", self._kind)
        return await self.get_config()
