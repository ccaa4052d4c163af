"""Tests for the Markdown exporter and the obsidian export sync kind."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
import yaml

from src.config import Settings
from src.highlights.base import Book, ExportPage, Highlight, HighlightStyle, SyncState
from src.highlights.config_loader import EngineConfig
from src.highlights.errors import ConcurrencyConflictError, ConfigurationError
from src.highlights.exporters.markdown import (
    MarkdownExporter,
    callout_type,
    render_book,
    sanitize_filename,
)
from src.highlights.service import build_sync_service
from src.highlights.settings_store import SyncSettingsStore, setting_key
from src.highlights.storage.memory import InMemoryHighlightStore, InMemorySettingsBackend
from src.highlights.sync.coordinator import SyncCoordinator
from src.highlights.sync.jobs import MarkdownExportJob
from src.highlights.sync.merge import MergeUpsertEngine
from src.highlights.sync.scheduler import ScheduleController
from src.highlights.sync.state import SyncStateRepository
from src.highlights.tests.conftest import TEST_KIND, Clock, FakeProvider, make_record

EXPORT_KIND = "obsidian"
EXPORTED_ON = date(2026, 2, 23)
HIGHLIGHTED = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def dune() -> Book:
    return Book(
        id=1,
        title="Dune",
        author="Frank Herbert",
        source="readwise",
        asin="B00B7NPRY8",
        highlights=[
            Highlight(
                book_id=1,
                text="I must not fear.\nFear is the mind-killer.",
                note="Litany",
                color="yellow",
                highlighted_at=HIGHLIGHTED,
            ),
            Highlight(book_id=1, text="Plans within plans", style=HighlightStyle.UNDERLINE),
        ],
    )


def split_note(content: str) -> tuple[dict, str]:
    _, front, body = content.split("---\n", 2)
    return yaml.safe_load(front), body


async def seed_books(store: InMemoryHighlightStore) -> None:
    await MergeUpsertEngine(store).apply(
        [
            make_record("Fear is the mind-killer.", title="Dune", author="Frank Herbert", source="readwise"),
            make_record("The spice must flow.", title="Dune", author="Frank Herbert", source="readwise"),
            make_record("It is a truth universally acknowledged", title="Emma", author="Jane Austen"),
        ]
    )


def export_backend(destination: str | None, enabled: bool = True) -> InMemorySettingsBackend:
    values = {
        setting_key(EXPORT_KIND, "enabled"): "true" if enabled else "false",
        setting_key(EXPORT_KIND, "schedule"): "0 * * * *",
    }
    if destination is not None:
        values[setting_key(EXPORT_KIND, "destination")] = destination
    return InMemorySettingsBackend(values)


def make_export_coordinator(
    store: InMemoryHighlightStore,
    backend: InMemorySettingsBackend,
    app_settings: Settings,
    engine_config: EngineConfig,
) -> SyncCoordinator:
    return SyncCoordinator(
        EXPORT_KIND,
        MarkdownExportJob(store, clock=Clock()),
        SyncStateRepository(backend, EXPORT_KIND),
        SyncSettingsStore(backend, EXPORT_KIND, app_settings, engine_config),
        config=engine_config,
        clock=Clock(),
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestRenderBook:
    def test_frontmatter(self) -> None:
        front, _ = split_note(render_book(dune(), EXPORTED_ON))

        assert front["content_source"] == "readwise"
        assert front["content_type"] == "book_highlights"
        assert front["created_at"] == "2026-02-23"
        assert front["title"] == "Dune"
        assert front["author"] == "Frank Herbert"
        assert front["highlights_count"] == 2
        assert front["tags"] == ["highlights", "books"]
        assert front["asin"] == "B00B7NPRY8"
        assert "source_url" not in front

    def test_quotes_in_title_survive_frontmatter(self) -> None:
        book = Book(title='The "Best" Book: Vol. 1', author="")
        front, body = split_note(render_book(book, EXPORTED_ON))

        assert front["title"] == 'The "Best" Book: Vol. 1'
        assert "*by" not in body

    def test_highlights_render_as_callouts(self) -> None:
        _, body = split_note(render_book(dune(), EXPORTED_ON))
        lines = body.split("\n")

        assert "# Dune" in lines
        assert "*by Frank Herbert*" in lines
        assert "> [!quote] 2026-01-05 09:00" in lines
        assert "> I must not fear." in lines
        assert "> Fear is the mind-killer." in lines
        assert "> **Note:** Litany" in lines
        assert "> [!success] (no date)" in lines
        assert "> *underlined*" in lines

    @pytest.mark.parametrize(
        "color, style, expected",
        [
            ("yellow", HighlightStyle.HIGHLIGHT, "quote"),
            ("Blue", HighlightStyle.HIGHLIGHT, "info"),
            ("#FFFF0000", HighlightStyle.HIGHLIGHT, "warning"),
            ("orange", HighlightStyle.HIGHLIGHT, "quote"),
            ("blue", HighlightStyle.STRIKETHROUGH, "failure"),
        ],
    )
    def test_callout_type(self, color: str, style: HighlightStyle, expected: str) -> None:
        assert callout_type(Highlight(book_id=1, text="x", color=color, style=style)) == expected

    def test_sanitize_filename(self) -> None:
        assert sanitize_filename('AC/DC: "Live" <1979>?') == "AC-DC- 'Live' 1979"
        assert sanitize_filename("a|b\\c*") == "a-b-c"
        assert sanitize_filename("???") == "untitled"


# ---------------------------------------------------------------------------
# Exporter
# ---------------------------------------------------------------------------


class TestMarkdownExporter:
    def test_writes_one_note_per_book_under_source_folder(self, tmp_path: Path) -> None:
        books = [dune(), Book(id=2, title="Emma", author="Jane Austen")]

        result = MarkdownExporter(tmp_path).export(books, EXPORTED_ON)

        assert (tmp_path / "readwise" / "Dune.md").is_file()
        assert (tmp_path / "unknown" / "Emma.md").is_file()
        assert result.books_exported == 2
        assert result.highlights_exported == 2
        assert result.failed == 0

    def test_reexport_overwrites(self, tmp_path: Path) -> None:
        exporter = MarkdownExporter(tmp_path)
        exporter.export([dune()], EXPORTED_ON)
        exporter.export([dune()], EXPORTED_ON)

        assert [p.name for p in (tmp_path / "readwise").iterdir()] == ["Dune.md"]

    def test_missing_directory_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="does not exist"):
            MarkdownExporter(tmp_path / "vault").export([dune()], EXPORTED_ON)

    def test_unwritable_book_is_counted_and_skipped(self, tmp_path: Path) -> None:
        # A directory where the note should go makes the write fail
        (tmp_path / "readwise" / "Dune.md").mkdir(parents=True)
        books = [dune(), Book(id=2, title="Emma", author="Jane Austen")]

        result = MarkdownExporter(tmp_path).export(books, EXPORTED_ON)

        assert result.books_failed == 1
        assert result.failed_groups == ["Dune"]
        assert result.books_exported == 1
        assert (tmp_path / "unknown" / "Emma.md").is_file()


# ---------------------------------------------------------------------------
# Export sync kind
# ---------------------------------------------------------------------------


class TestMarkdownExportRun:
    @pytest.mark.asyncio
    async def test_export_run_succeeds(
        self,
        tmp_path: Path,
        highlight_store: InMemoryHighlightStore,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        await seed_books(highlight_store)
        coordinator = make_export_coordinator(
            highlight_store, export_backend(str(tmp_path)), app_settings, engine_config
        )

        status = await coordinator.run_now()

        assert status.state is SyncState.SUCCESS
        assert status.items_processed == 3
        assert status.message == "Exported 2 book(s), 3 highlight(s)"
        front, _ = split_note((tmp_path / "readwise" / "Dune.md").read_text())
        assert front["highlights_count"] == 2
        assert front["created_at"] == "2026-02-23"

    @pytest.mark.asyncio
    async def test_no_books_is_success(
        self,
        tmp_path: Path,
        highlight_store: InMemoryHighlightStore,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        coordinator = make_export_coordinator(
            highlight_store, export_backend(str(tmp_path)), app_settings, engine_config
        )

        status = await coordinator.run_now()

        assert status.state is SyncState.SUCCESS
        assert status.message == "No books to export"

    @pytest.mark.asyncio
    async def test_missing_destination_is_configuration_error(
        self,
        highlight_store: InMemoryHighlightStore,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        await seed_books(highlight_store)
        coordinator = make_export_coordinator(
            highlight_store, export_backend(None), app_settings, engine_config
        )

        status = await coordinator.run_now()

        assert status.state is SyncState.FAILED
        assert status.error_kind == "ConfigurationError"
        assert status.error_message == "Export directory not configured"
        assert status.last_good_cursor is None

    @pytest.mark.asyncio
    async def test_nonexistent_destination_fails_run(
        self,
        tmp_path: Path,
        highlight_store: InMemoryHighlightStore,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        await seed_books(highlight_store)
        coordinator = make_export_coordinator(
            highlight_store, export_backend(str(tmp_path / "vault")), app_settings, engine_config
        )

        status = await coordinator.run_now()

        assert status.state is SyncState.FAILED
        assert status.error_kind == "ConfigurationError"
        assert "does not exist" in status.error_message

    @pytest.mark.asyncio
    async def test_failed_book_fails_run_with_counts(
        self,
        tmp_path: Path,
        highlight_store: InMemoryHighlightStore,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        await seed_books(highlight_store)
        (tmp_path / "readwise" / "Dune.md").mkdir(parents=True)
        coordinator = make_export_coordinator(
            highlight_store, export_backend(str(tmp_path)), app_settings, engine_config
        )

        status = await coordinator.run_now()

        assert status.state is SyncState.FAILED
        assert status.items_processed == 1
        assert status.items_failed == 1
        assert status.error_message == "1 book(s) failed to export (Dune)"

    @pytest.mark.asyncio
    async def test_scheduled_only_with_destination(
        self,
        tmp_path: Path,
        highlight_store: InMemoryHighlightStore,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        backend = export_backend(None)
        coordinator = make_export_coordinator(highlight_store, backend, app_settings, engine_config)
        controller = ScheduleController(
            coordinator,
            SyncSettingsStore(backend, EXPORT_KIND, app_settings, engine_config),
            config=engine_config,
        )

        assert await controller.reschedule() is None

        await backend.set(setting_key(EXPORT_KIND, "destination"), str(tmp_path))
        assert await controller.reschedule() is not None
        assert controller.schedule == "0 * * * *"


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


class TestIndependentKinds:
    def build(
        self,
        provider: FakeProvider,
        store: InMemoryHighlightStore,
        backend: InMemorySettingsBackend,
        app_settings: Settings,
        engine_config: EngineConfig,
    ):
        return build_sync_service(
            store,
            backend,
            kinds=[TEST_KIND, EXPORT_KIND],
            clients={TEST_KIND: provider},
            settings=app_settings,
            engine_config=engine_config,
        )

    def test_default_kinds_include_export(self, engine_config: EngineConfig) -> None:
        assert engine_config.kinds == ["readwise", EXPORT_KIND]

    @pytest.mark.asyncio
    async def test_kinds_run_concurrently_with_separate_guards(
        self,
        tmp_path: Path,
        highlight_store: InMemoryHighlightStore,
        settings_backend: InMemorySettingsBackend,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        await seed_books(highlight_store)
        await settings_backend.set(setting_key(EXPORT_KIND, "destination"), str(tmp_path))
        gate = asyncio.Event()
        provider = FakeProvider([ExportPage(records=[make_record("new")])], gate=gate)
        service = self.build(provider, highlight_store, settings_backend, app_settings, engine_config)

        import_handle = service.trigger(TEST_KIND)
        export_handle = service.trigger(EXPORT_KIND)
        assert service.is_syncing(TEST_KIND)
        assert service.is_syncing(EXPORT_KIND)

        # A conflict on one kind leaves the other untouched
        with pytest.raises(ConcurrencyConflictError):
            service.trigger(TEST_KIND)
        with pytest.raises(ConcurrencyConflictError):
            service.trigger(EXPORT_KIND)

        export_status = await export_handle.wait()
        assert export_status.state is SyncState.SUCCESS
        assert not service.is_syncing(EXPORT_KIND)
        assert service.is_syncing(TEST_KIND)
        assert service.get_status(TEST_KIND).state is SyncState.RUNNING

        # The export kind can run again while the import is still held
        second_export = await service.trigger(EXPORT_KIND).wait()
        assert second_export.state is SyncState.SUCCESS

        gate.set()
        import_status = await import_handle.wait()
        assert import_status.state is SyncState.SUCCESS
        assert not service.is_syncing(TEST_KIND)

    @pytest.mark.asyncio
    async def test_export_kind_has_no_credential_to_validate(
        self,
        highlight_store: InMemoryHighlightStore,
        settings_backend: InMemorySettingsBackend,
        app_settings: Settings,
        engine_config: EngineConfig,
    ) -> None:
        provider = FakeProvider()
        service = self.build(provider, highlight_store, settings_backend, app_settings, engine_config)

        with pytest.raises(ConfigurationError, match="does not use a credential"):
            await service.validate_credential(EXPORT_KIND, "token")
        assert provider.validate_calls == []
