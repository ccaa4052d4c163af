"""The work a SyncCoordinator performs for one sync kind.

A coordinator owns the run lifecycle (guard, status, cursor, timeout); the
job owns what happens inside a run:

    ProviderImportJob  — validate the credential, stream export pages, merge
    MarkdownExportJob  — write every stored book to the destination directory

Each job reports into a result object exposing ``processed``, ``failed`` and
``failed_groups`` so the coordinator can publish counts the same way for
every kind.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

from src.highlights.base import HighlightProvider, SyncConfig, utc_now
from src.highlights.errors import ConfigurationError
from src.highlights.exporters.markdown import ExportResult, MarkdownExporter
from src.highlights.storage.base import HighlightStore
from src.highlights.sync.merge import MergeResult, MergeUpsertEngine

logger = logging.getLogger("marginalia.highlights.sync.jobs")

Progress = Callable[[Any], None]


class SyncJob(ABC):
    """One kind of run a SyncCoordinator can drive."""

    # Name reported as ``error_kind`` when items fail without an exception
    failure_kind = "SyncError"

    @abstractmethod
    def requirement_error(self, config: SyncConfig) -> str | None:
        """Return why ``config`` cannot run this job, or None when it can."""

    def secret(self, config: SyncConfig) -> str:
        """Value that must never appear in a published error message."""
        return ""

    @abstractmethod
    def new_result(self) -> Any:
        ...

    @abstractmethod
    async def run(
        self, config: SyncConfig, cursor: str | None, result: Any, progress: Progress
    ) -> None:
        """Do the work, accumulating into ``result`` and calling ``progress`` as it goes."""

    @abstractmethod
    def summary(self, result: Any) -> str:
        ...

    @abstractmethod
    def failure_message(self, result: Any) -> str:
        ...


class ProviderImportJob(SyncJob):
    """Fetch highlights from a remote provider and merge them into storage."""

    failure_kind = "MalformedRecordError"

    def __init__(self, client: HighlightProvider, merge_engine: MergeUpsertEngine) -> None:
        self.client = client
        self._merge = merge_engine

    def requirement_error(self, config: SyncConfig) -> str | None:
        return None if config.has_credential else "Token not configured"

    def secret(self, config: SyncConfig) -> str:
        return config.credential

    def new_result(self) -> MergeResult:
        return MergeResult()

    async def run(
        self, config: SyncConfig, cursor: str | None, result: MergeResult, progress: Progress
    ) -> None:
        await self.client.validate_credential(config.credential)

        async for page in self.client.iter_pages(config.credential, updated_after=cursor):
            page_result = await self._merge.apply(page.records)
            page_result.records_failed += page.malformed
            result.merge(page_result)
            progress(result)

    def summary(self, result: MergeResult) -> str:
        return (
            f"Synced {result.processed} highlight(s): {result.highlights_created} new, "
            f"{result.highlights_updated} updated, {result.books_created} new book(s)"
        )

    def failure_message(self, result: MergeResult) -> str:
        return f"{result.failed} record(s) failed to merge" + _titles(result.failed_groups)


class MarkdownExportJob(SyncJob):
    """Write every stored book as a Markdown note under ``config.destination``."""

    failure_kind = "OSError"

    def __init__(
        self,
        store: HighlightStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock

    def requirement_error(self, config: SyncConfig) -> str | None:
        return None if config.destination else "Export directory not configured"

    def new_result(self) -> ExportResult:
        return ExportResult()

    async def run(
        self, config: SyncConfig, cursor: str | None, result: ExportResult, progress: Progress
    ) -> None:
        books = await self._store.list_books()
        if not books:
            logger.info("No books to export")
            return

        exporter = MarkdownExporter(config.destination)
        try:
            # Blocking file I/O
            await asyncio.to_thread(exporter.export, books, self._clock().date(), result)
        except FileNotFoundError as exc:
            raise ConfigurationError(str(exc)) from exc
        progress(result)

    def summary(self, result: ExportResult) -> str:
        if not result.books_exported:
            return "No books to export"
        return (
            f"Exported {result.books_exported} book(s), "
            f"{result.highlights_exported} highlight(s)"
        )

    def failure_message(self, result: ExportResult) -> str:
        return f"{result.books_failed} book(s) failed to export" + _titles(result.failed_titles)


def _titles(titles: list[str]) -> str:
    return f" ({', '.join(titles[:3])})" if titles else ""
