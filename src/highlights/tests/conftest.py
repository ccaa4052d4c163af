"""Shared fixtures, fakes and mock API responses for highlight sync tests."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.config import Settings
from src.highlights.base import (
    Book,
    ExportPage,
    HighlightProvider,
    HighlightRecord,
)
from src.highlights.config_loader import EngineConfig, RunConfig, load_engine_config
from src.highlights.settings_store import SyncSettingsStore, setting_key
from src.highlights.storage.memory import InMemoryHighlightStore, InMemorySettingsBackend
from src.highlights.sync.coordinator import SyncCoordinator
from src.highlights.sync.jobs import ProviderImportJob
from src.highlights.sync.merge import MergeUpsertEngine
from src.highlights.sync.state import SyncStateRepository

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

TEST_KIND = "readwise"
TEST_TOKEN = "rw_test_token_1234567890"
TEST_NOW = datetime(2026, 2, 23, 12, 5, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine_config() -> EngineConfig:
    """Load the real engine config for tests."""
    return load_engine_config()


@pytest.fixture
def app_settings() -> Settings:
    """Process settings with no environment fallbacks."""
    return Settings(
        _env_file=None,
        database_url="",
        readwise_sync_enabled=None,
        readwise_token="",
        readwise_sync_schedule="",
        obsidian_sync_enabled=None,
        obsidian_sync_schedule="",
        obsidian_sync_destination="",
    )


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def export_page1_raw() -> dict:
    return json.loads((FIXTURES_DIR / "readwise_export_page1.json").read_text())


@pytest.fixture
def export_page2_raw() -> dict:
    return json.loads((FIXTURES_DIR / "readwise_export_page2.json").read_text())


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def make_record(
    text: str = "Care about your craft.",
    title: str = "The Pragmatic Programmer",
    author: str = "Andrew Hunt",
    **overrides: object,
) -> HighlightRecord:
    return HighlightRecord(
        provider_id=TEST_KIND,
        book_title=title,
        book_author=author,
        text=text,
        **overrides,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider(HighlightProvider):
    """Scripted provider: serves ``pages`` in order, each an ExportPage or an exception.

    ``gate`` (if set) must be released before the first page is served,
    which lets tests hold a run in the ``running`` state.
    """

    SOURCE_ID = TEST_KIND
    DISPLAY_NAME = "Fake"

    def __init__(
        self,
        pages: list[ExportPage | Exception] | None = None,
        validate_error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.pages = list(pages or [ExportPage()])
        self.validate_error = validate_error
        self.gate = gate
        self.validate_calls: list[str] = []
        self.fetch_calls: list[dict] = []

    async def validate_credential(self, token: str) -> None:
        self.validate_calls.append(token)
        if self.validate_error is not None:
            raise self.validate_error

    async def fetch_page(self, token, cursor=None, updated_after=None) -> ExportPage:
        self.fetch_calls.append(
            {"token": token, "cursor": cursor, "updated_after": updated_after}
        )
        if self.gate is not None:
            await self.gate.wait()
        index = 0 if cursor is None else int(cursor)
        item = self.pages[index]
        if isinstance(item, Exception):
            raise item
        has_next = index + 1 < len(self.pages)
        return replace(item, next_cursor=str(index + 1) if has_next else None)


class FailingBookStore(InMemoryHighlightStore):
    """In-memory store whose ``create_book`` fails for selected titles."""

    def __init__(self, failing_titles: set[str], error: Exception | None = None) -> None:
        super().__init__()
        self.failing_titles = failing_titles
        self.error = error or RuntimeError("constraint violation")

    async def create_book(self, book: Book, title_key: str, author_key: str) -> Book:
        if book.title in self.failing_titles:
            raise self.error
        return await super().create_book(book, title_key, author_key)


# ---------------------------------------------------------------------------
# Wiring helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def highlight_store() -> InMemoryHighlightStore:
    return InMemoryHighlightStore()


@pytest.fixture
def settings_backend() -> InMemorySettingsBackend:
    """Settings backend with sync enabled and a stored token."""
    return InMemorySettingsBackend(
        {
            setting_key(TEST_KIND, "enabled"): "true",
            setting_key(TEST_KIND, "credential"): TEST_TOKEN,
            setting_key(TEST_KIND, "schedule"): "0 * * * *",
        }
    )


def fast_config(config: EngineConfig, timeout_seconds: float = 5.0) -> EngineConfig:
    return replace(config, run=RunConfig(timeout_seconds=timeout_seconds))


class Clock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = TEST_NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value


def make_coordinator(
    provider: HighlightProvider,
    store: InMemoryHighlightStore,
    backend: InMemorySettingsBackend,
    settings: Settings,
    config: EngineConfig,
    clock: Clock | None = None,
) -> SyncCoordinator:
    return SyncCoordinator(
        TEST_KIND,
        ProviderImportJob(provider, MergeUpsertEngine(store)),
        SyncStateRepository(backend, TEST_KIND),
        SyncSettingsStore(backend, TEST_KIND, settings, config),
        config=config,
        clock=clock or Clock(),
    )
