"""Cron-driven timer for one sync kind.

Wraps an APScheduler ``AsyncIOScheduler`` job that calls
``SyncCoordinator.run_now`` whenever the configured cron expression fires:

1. ``start()`` starts the scheduler and applies the current SyncConfig
2. ``reschedule()`` re-reads the SyncConfig and swaps the job's trigger
3. Each fire awaits ``run_now``; a fire during an active run is skipped
4. ``stop()`` removes the job (and shuts down a scheduler it owns)

Rescheduling only replaces the timer; a run already in progress keeps going.
"""

from __future__ import annotations

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.highlights.base import SyncStatus, utc_now
from src.highlights.config_loader import EngineConfig, get_engine_config
from src.highlights.errors import ConcurrencyConflictError
from src.highlights.settings_store import SyncSettingsStore
from src.highlights.sync.coordinator import SyncCoordinator
from src.highlights.sync.cron import next_fire_time, parse_cron

logger = logging.getLogger("marginalia.highlights.sync.scheduler")

# Seconds a fire may be late (e.g. event loop busy) and still run
MISFIRE_GRACE_SECONDS = 300


class ScheduleController:
    """Schedule periodic runs of one SyncCoordinator.

    Usage::

        controller = ScheduleController(coordinator, settings_store)
        await controller.start()
        controller.get_next_run_time()
        await controller.stop()
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        settings: SyncSettingsStore,
        scheduler: AsyncIOScheduler | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            coordinator: Coordinator whose ``run_now`` is invoked on each fire.
            settings:    Source of the enabled flag, schedule, credential and destination.
            scheduler:   Shared APScheduler instance; one is created (and owned) if omitted.
            config:      Engine config (timezone). Defaults to the cached one.
        """
        self._coordinator = coordinator
        self._settings = settings
        self._config = config or get_engine_config()
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or AsyncIOScheduler(timezone=self._config.schedule.timezone)
        self._job_id = f"sync:{coordinator.kind}"
        self._trigger: CronTrigger | None = None
        self._schedule: str | None = None
        coordinator.attach_schedule(self.get_next_run_time)

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def schedule(self) -> str | None:
        """Cron expression of the active job, or None when unscheduled."""
        return self._schedule

    async def start(self) -> datetime | None:
        """Start the scheduling loop and apply the current configuration."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started for %s", self._coordinator.kind)
        return await self.reschedule()

    async def stop(self) -> None:
        self._remove_job()
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped for %s", self._coordinator.kind)

    async def reschedule(self) -> datetime | None:
        """Re-read the SyncConfig and replace the timer.

        Returns:
            The next fire time, or None when sync is disabled or the job is not
            configured (no credential, no destination).

        Raises:
            ConfigurationError: The stored schedule is invalid.  The existing
                                job is left untouched.
        """
        config = await self._settings.get_config()
        kind = self._coordinator.kind

        problem = self._coordinator.job.requirement_error(config)
        if not config.enabled or problem:
            self._remove_job()
            logger.info(
                "%s sync unscheduled (%s)", kind, "disabled" if not config.enabled else problem
            )
            return None

        trigger = parse_cron(config.schedule, self._config.schedule.timezone)

        # Before start, add_job queues instead of replacing
        if not self._scheduler.running and self._scheduler.get_job(self._job_id) is not None:
            self._scheduler.remove_job(self._job_id)

        self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=self._job_id,
            name=f"{kind} sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
        )
        self._trigger = trigger
        self._schedule = config.schedule

        next_run = self.get_next_run_time()
        logger.info("%s sync scheduled with '%s' (next run %s)", kind, config.schedule, next_run)
        return next_run

    def get_next_run_time(self, now: datetime | None = None) -> datetime | None:
        if self._trigger is None:
            return None
        return next_fire_time(self._trigger, now or utc_now())

    def is_running(self) -> bool:
        """True while the scheduling loop itself is alive."""
        return bool(self._scheduler.running)

    async def run_now(self) -> SyncStatus:
        """Run immediately, bypassing the timer.

        Raises:
            ConcurrencyConflictError: A run is already active.
        """
        return await self._coordinator.run_now()

    async def _fire(self) -> None:
        try:
            await self._coordinator.run_now()
        except ConcurrencyConflictError:
            logger.info(
                "Scheduled %s sync skipped: previous run still active", self._coordinator.kind
            )

    def _remove_job(self) -> None:
        if self._scheduler.get_job(self._job_id) is not None:
            self._scheduler.remove_job(self._job_id)
        self._trigger = None
        self._schedule = None
