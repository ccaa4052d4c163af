"""SyncService: composition root and control surface of the sync engine.

Wires one SyncCoordinator + ScheduleController pair per sync kind (provider
imports such as ``readwise``, file exports such as ``obsidian``) and exposes
the operations the HTTP layer needs:

    trigger / run_now         — start a run (ConcurrencyConflictError if active)
    get_status                — last or current SyncStatus
    get_next_run_time         — next scheduled fire (None when unscheduled)
    is_running / is_syncing   — scheduler loop alive / run in progress
    update_settings           — validated save, then reschedule
    reset_settings            — drop stored overrides, then reschedule
    validate_credential       — check the token with the provider (import kinds)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.config import Settings, get_settings
from src.highlights.adapters import get_provider
from src.highlights.base import HighlightProvider, SyncStatus
from src.highlights.config_loader import EngineConfig, get_engine_config
from src.highlights.errors import ConfigurationError
from src.highlights.settings_store import SyncConfigInfo, SyncSettingsStore
from src.highlights.storage.base import HighlightStore, SettingsBackend
from src.highlights.sync.coordinator import SyncCoordinator
from src.highlights.sync.jobs import MarkdownExportJob, ProviderImportJob, SyncJob
from src.highlights.sync.merge import MergeUpsertEngine
from src.highlights.sync.scheduler import ScheduleController
from src.highlights.sync.state import SyncStateRepository
from src.highlights.sync.tasks import RescheduleTask, RunSyncTask, TaskHandle, TaskRunner

logger = logging.getLogger("marginalia.highlights.service")


@dataclass
class SyncComponents:
    """Everything wired for one sync kind; ``client`` is None for export kinds."""

    client: HighlightProvider | None
    settings: SyncSettingsStore
    coordinator: SyncCoordinator
    controller: ScheduleController


class SyncService:
    """Control surface over every configured sync kind."""

    def __init__(
        self,
        components: dict[str, SyncComponents],
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._components = components
        self._scheduler = scheduler
        self._runner = TaskRunner(
            {kind: c.coordinator for kind, c in components.items()},
            {kind: c.controller for kind, c in components.items()},
        )

    @property
    def kinds(self) -> list[str]:
        return list(self._components)

    def _get(self, kind: str) -> SyncComponents:
        if kind not in self._components:
            raise KeyError(f"Unknown sync kind '{kind}'. Available: {self.kinds}")
        return self._components[kind]

    # ── Lifecycle ──

    async def start(self) -> None:
        """Restore persisted statuses and start every schedule.

        An invalid stored schedule leaves that kind unscheduled instead of
        preventing startup.
        """
        for kind, components in self._components.items():
            await components.coordinator.restore()
            try:
                await components.controller.start()
            except ConfigurationError as exc:
                logger.error("Not scheduling %s sync: %s", kind, exc)

    async def stop(self) -> None:
        await self._runner.shutdown()
        for components in self._components.values():
            await components.controller.stop()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    # ── Runs ──

    def trigger(self, kind: str) -> TaskHandle:
        """Start a run in the background.

        Raises:
            ConcurrencyConflictError: A run of this kind is already active.
            KeyError:                 Unknown sync kind.
        """
        self._get(kind)
        handle = self._runner.submit(RunSyncTask(kind))
        logger.info("Manual %s sync accepted", kind)
        return handle

    async def run_now(self, kind: str) -> SyncStatus:
        return await self._get(kind).controller.run_now()

    # ── Queries ──

    def get_status(self, kind: str) -> SyncStatus:
        return self._get(kind).coordinator.get_status()

    def get_next_run_time(self, kind: str) -> datetime | None:
        return self._get(kind).coordinator.get_next_run_time()

    def is_running(self, kind: str) -> bool:
        return self._get(kind).controller.is_running()

    def is_syncing(self, kind: str) -> bool:
        return self._get(kind).coordinator.is_running()

    # ── Settings ──

    async def get_config_info(self, kind: str) -> SyncConfigInfo:
        return await self._get(kind).settings.get_config_info()

    async def update_settings(
        self,
        kind: str,
        enabled: bool | None = None,
        schedule: str | None = None,
        credential: str | None = None,
        destination: str | None = None,
    ) -> datetime | None:
        """Save settings and reschedule; returns the new next run time.

        Raises:
            ConfigurationError: Invalid schedule; nothing is saved.
        """
        await self._get(kind).settings.save(
            enabled=enabled, schedule=schedule, credential=credential, destination=destination
        )
        return await self._runner.submit(RescheduleTask(kind)).wait()

    async def reset_settings(self, kind: str) -> datetime | None:
        await self._get(kind).settings.clear()
        return await self._runner.submit(RescheduleTask(kind)).wait()

    async def validate_credential(self, kind: str, token: str | None = None) -> None:
        """Check ``token`` (or the stored credential) with the provider.

        Raises:
            ConfigurationError:     No token given and none configured, or
                                    ``kind`` is an export kind.
            CredentialError:        The provider rejected the token.
            TransientProviderError: The provider could not be reached.
        """
        components = self._get(kind)
        if components.client is None:
            raise ConfigurationError(f"{kind} sync does not use a credential")
        if not token:
            token = (await components.settings.get_config()).credential
        if not token:
            raise ConfigurationError("Token not configured")
        await components.client.validate_credential(token)


def build_sync_service(
    highlight_store: HighlightStore,
    settings_backend: SettingsBackend,
    kinds: list[str] | None = None,
    clients: dict[str, HighlightProvider] | None = None,
    settings: Settings | None = None,
    engine_config: EngineConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    scheduler: AsyncIOScheduler | None = None,
) -> SyncService:
    """Wire a SyncService by constructor injection.

    Args:
        highlight_store:  Storage for books and highlights.
        settings_backend: Key/value storage for sync settings and run status.
        kinds:            Sync kinds to wire (defaults to every configured provider and export).
        clients:          Pre-built provider clients by kind (tests inject fakes here).
        settings:         Process settings for environment fallbacks.
        engine_config:    Engine tuning; defaults to the cached sync_config.yaml.
        http_client:      Shared httpx client for provider requests.
        scheduler:        Shared APScheduler instance.
    """
    settings = settings or get_settings()
    engine_config = engine_config or get_engine_config()
    clients = dict(clients or {})
    kinds = kinds or list(clients) or engine_config.kinds
    scheduler = scheduler or AsyncIOScheduler(timezone=engine_config.schedule.timezone)

    merge_engine = MergeUpsertEngine(highlight_store)
    components: dict[str, SyncComponents] = {}

    for kind in kinds:
        client = clients.get(kind)
        job: SyncJob
        if client is None and kind in engine_config.exports:
            job = MarkdownExportJob(highlight_store)
        else:
            if client is None:
                client = get_provider(kind)(config=engine_config, http_client=http_client)
            job = ProviderImportJob(client, merge_engine)
        settings_store = SyncSettingsStore(settings_backend, kind, settings, engine_config)
        coordinator = SyncCoordinator(
            kind,
            job,
            SyncStateRepository(settings_backend, kind),
            settings_store,
            config=engine_config,
        )
        controller = ScheduleController(
            coordinator, settings_store, scheduler=scheduler, config=engine_config
        )
        components[kind] = SyncComponents(client, settings_store, coordinator, controller)

    logger.info("Sync service wired for: %s", ", ".join(components) or "(none)")
    return SyncService(components, scheduler=scheduler)
