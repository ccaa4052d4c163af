"""Run lifecycle and single-flight guard for one sync kind.

A run:
1. Claims the guard (ConcurrencyConflictError if a run is already active)
2. Publishes a ``running`` status
3. Reads the SyncConfig and checks the job's requirements
4. Runs the job (import: stream pages updated after the last good cursor and
   merge each; export: write stored books to the destination)
5. Publishes ``success`` and advances the cursor, or ``failed`` without
   touching the cursor
6. Releases the guard

The status stays at its terminal value until the next run begins.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Coroutine

from src.highlights.base import (
    SyncState,
    SyncStatus,
    format_rfc3339,
    utc_now,
)
from src.highlights.config_loader import EngineConfig, get_engine_config
from src.highlights.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    StorageUnavailableError,
    SyncError,
)
from src.highlights.settings_store import SyncSettingsStore, mask_credential
from src.highlights.sync.jobs import SyncJob
from src.highlights.sync.state import SyncStateRepository

logger = logging.getLogger("marginalia.highlights.sync.coordinator")

INTERRUPTED_MESSAGE = "sync was interrupted"


class SyncCoordinator:
    """Drive one sync kind's job, one run at a time.

    Usage::

        job = ProviderImportJob(client, MergeUpsertEngine(store))
        coordinator = SyncCoordinator("readwise", job, state, settings)
        await coordinator.restore()
        status = await coordinator.run_now()
    """

    def __init__(
        self,
        kind: str,
        job: SyncJob,
        state: SyncStateRepository,
        settings: SyncSettingsStore,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._kind = kind
        self._job = job
        self._state = state
        self._settings = settings
        self._config = config or get_engine_config()
        self._clock = clock
        self._status = SyncStatus()
        self._active = False
        self._unstarted: Coroutine[Any, Any, SyncStatus] | None = None
        self._secret = ""
        self._next_run_source: Callable[[], datetime | None] | None = None

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def job(self) -> SyncJob:
        return self._job

    # ------------------------------------------------------------------
    # Queries (never block)
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        """True while a run holds the guard."""
        return self._active

    def get_status(self) -> SyncStatus:
        return self._status

    def get_next_run_time(self) -> datetime | None:
        if self._next_run_source is None:
            return None
        return self._next_run_source()

    def attach_schedule(self, next_run_source: Callable[[], datetime | None]) -> None:
        """Register the callable that reports the next scheduled fire time."""
        self._next_run_source = next_run_source

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def restore(self) -> SyncStatus:
        """Load the persisted status at startup.

        A ``running`` status can only have been left by a process that died
        mid-run; it is rewritten as failed.
        """
        status = await self._state.load()
        if status.state is SyncState.RUNNING and not self._active:
            status = status.fail(self._clock(), INTERRUPTED_MESSAGE, "InterruptedError")
            await self._state.save(status)
            logger.warning("Previous %s sync was interrupted; marked as failed", self._kind)
        self._status = status
        return status

    def claim(self) -> Coroutine[Any, Any, SyncStatus]:
        """Acquire the guard now and return the coroutine that performs the run.

        The guard is taken synchronously, so callers can answer
        accepted/conflict before the run is scheduled.  The returned
        coroutine must be awaited (or wrapped in a task) exactly once.

        Raises:
            ConcurrencyConflictError: A run of this kind is already active.
        """
        if self._active:
            raise ConcurrencyConflictError(self._kind)
        self._active = True
        run = self._run_claimed()
        self._unstarted = run
        return run

    def release_unstarted(self, run: Coroutine[Any, Any, SyncStatus]) -> bool:
        """Drop the claim behind ``run`` if it was cancelled before its first step.

        A task cancelled before it starts never enters ``_run_claimed``, so
        its ``finally`` cannot release the guard.  ``run`` is the coroutine
        returned by ``claim``; a claim that has since started (or a newer
        claim) is left alone.  Returns True if the guard was released.
        """
        if run is not self._unstarted:
            return False
        self._unstarted = None
        self._active = False
        run.close()
        logger.info("%s sync cancelled before it started", self._kind)
        return True

    async def run_now(self) -> SyncStatus:
        """Run a sync immediately and return its terminal status.

        Raises:
            ConcurrencyConflictError: A run of this kind is already active.
                                      No I/O is done and no state changes.
        """
        return await self.claim()

    # ------------------------------------------------------------------
    # Run internals
    # ------------------------------------------------------------------

    async def _run_claimed(self) -> SyncStatus:
        self._unstarted = None
        try:
            return await self._execute()
        finally:
            self._active = False
            self._secret = ""

    async def _execute(self) -> SyncStatus:
        started_at = self._clock()
        cursor = self._status.last_good_cursor
        self._status = self._status.begin(started_at)
        result = self._job.new_result()
        timeout = self._config.run.timeout_seconds

        logger.info("Starting %s sync (updated_after=%s)", self._kind, cursor or "-")

        try:
            await self._state.save(self._status)
            await asyncio.wait_for(self._sync(cursor, result), timeout=timeout)
        except asyncio.CancelledError:
            await self._finish_failed(result, "sync was cancelled", "CancelledError")
            raise
        except asyncio.TimeoutError:
            await self._finish_failed(
                result, f"sync timed out after {timeout:g}s", "TimeoutError"
            )
            return self._status
        except SyncError as exc:
            await self._finish_failed(result, str(exc), type(exc).__name__)
            return self._status
        except Exception as exc:
            logger.exception("Unexpected error during %s sync", self._kind)
            await self._finish_failed(result, str(exc) or repr(exc), type(exc).__name__)
            return self._status

        if result.failed:
            await self._finish_failed(
                result, self._job.failure_message(result), self._job.failure_kind
            )
            return self._status

        status = self._status.with_counts(result.processed, result.failed).succeed(
            self._clock(),
            cursor=format_rfc3339(started_at),
            message=self._job.summary(result),
        )
        await self._publish(status)
        logger.info(
            "%s sync succeeded: %d processed, cursor → %s",
            self._kind, result.processed, status.last_good_cursor,
        )
        return status

    async def _sync(self, cursor: str | None, result: Any) -> None:
        config = await self._settings.get_config()
        problem = self._job.requirement_error(config)
        if problem:
            raise ConfigurationError(problem)
        self._secret = self._job.secret(config)

        await self._job.run(config, cursor, result, self._progress)

    def _progress(self, result: Any) -> None:
        self._status = self._status.with_counts(result.processed, result.failed)

    async def _finish_failed(self, result: Any, message: str, error_kind: str) -> None:
        message = self._sanitize(message)
        status = self._status.with_counts(result.processed, result.failed).fail(
            self._clock(), message, error_kind
        )
        await self._publish(status)
        logger.warning(
            "%s sync failed (%s): %s [processed=%d failed=%d]",
            self._kind, error_kind, message, result.processed, result.failed,
        )

    async def _publish(self, status: SyncStatus) -> None:
        """Make ``status`` visible to pollers and persist it.

        The in-memory status is authoritative for this process, so a
        persistence failure is logged rather than turning the outcome into
        a different one.
        """
        self._status = status
        try:
            await self._state.save(status)
        except StorageUnavailableError as exc:
            logger.error("Could not persist %s sync status: %s", self._kind, exc)

    def _sanitize(self, message: str) -> str:
        if self._secret and self._secret in message:
            return message.replace(self._secret, mask_credential(self._secret))
        return message
