"""Tests for the merge/upsert engine and dedup keys."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.highlights.errors import StorageUnavailableError
from src.highlights.storage.memory import InMemoryHighlightStore
from src.highlights.sync.dedup import (
    book_key,
    build_upsert_query,
    collapse_records,
    highlight_key,
    normalize_text,
    text_fingerprint,
)
from src.highlights.sync.merge import MergeUpsertEngine
from src.highlights.tests.conftest import FailingBookStore, make_record

EARLY = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
LATE = datetime(2026, 2, 20, 21, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Dedup keys
# ---------------------------------------------------------------------------


class TestDedupKeys:
    def test_normalize_text_trims_collapses_and_lowercases(self) -> None:
        assert normalize_text("  The   Pragmatic\tProgrammer \n") == "the pragmatic programmer"

    def test_normalize_text_none_is_empty(self) -> None:
        assert normalize_text(None) == ""

    def test_book_key_ignores_case_and_spacing(self) -> None:
        assert book_key("Dune ", "Frank  Herbert") == book_key("dune", "frank herbert")

    def test_highlight_key_prefers_external_id(self) -> None:
        a = make_record(text="one", external_id="42")
        b = make_record(text="two", external_id="42")
        assert highlight_key(a) == highlight_key(b) == "ext:42"

    def test_highlight_key_fingerprint_includes_location(self) -> None:
        a = make_record(text="Same text", location=10)
        b = make_record(text="same  TEXT", location=10)
        c = make_record(text="Same text", location=11)
        assert highlight_key(a) == highlight_key(b)
        assert highlight_key(a) != highlight_key(c)

    def test_fingerprint_is_stable_hex(self) -> None:
        fp = text_fingerprint("Hello", None)
        assert fp == text_fingerprint("hello ", None)
        assert len(fp) == 64

    def test_collapse_keeps_first_identity_and_last_note(self) -> None:
        records = [
            make_record("first", external_id="7", note="old", color="yellow"),
            make_record("other", external_id="8"),
            make_record("second", external_id="7", note="new", color="blue", highlighted_at=LATE),
        ]

        collapsed, duplicates = collapse_records(records)

        assert duplicates == 1
        assert [r.external_id for r in collapsed] == ["7", "8"]
        assert (collapsed[0].text, collapsed[0].note, collapsed[0].color) == ("first", "new", "blue")
        assert collapsed[0].highlighted_at == LATE


class TestBuildUpsertQuery:
    def test_updates_non_key_columns(self) -> None:
        query = build_upsert_query("settings", ["key", "value"], ["key"])
        assert query == (
            "INSERT INTO settings (key, value) VALUES ($1, $2) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()"
        )

    def test_do_nothing_with_returning(self) -> None:
        query = build_upsert_query(
            "books", ["title", "title_key"], ["title_key"], update_columns=[], returning="id"
        )
        assert query.endswith("ON CONFLICT (title_key) DO NOTHING RETURNING id")


# ---------------------------------------------------------------------------
# Merge engine
# ---------------------------------------------------------------------------


class TestMergeUpsertEngine:
    @pytest.mark.asyncio
    async def test_creates_books_and_highlights(self, highlight_store: InMemoryHighlightStore) -> None:
        engine = MergeUpsertEngine(highlight_store)
        result = await engine.apply(
            [
                make_record("A", external_id="1"),
                make_record("B", external_id="2"),
                make_record("C", title="Dune", author="Frank Herbert"),
            ]
        )

        assert result.books_created == 2
        assert result.highlights_created == 3
        assert result.processed == 3
        assert result.failed == 0
        assert len(highlight_store.books()) == 2

    @pytest.mark.asyncio
    async def test_apply_twice_is_idempotent(self, highlight_store: InMemoryHighlightStore) -> None:
        engine = MergeUpsertEngine(highlight_store)
        batch = [
            make_record("A", external_id="1", note="n", color="yellow", highlighted_at=EARLY),
            make_record("B", location=5),
            make_record("C", title="Dune", author="Frank Herbert"),
        ]

        await engine.apply(batch)
        snapshot = highlight_store.books()
        second = await engine.apply(batch)

        assert second.processed == 0
        assert second.highlights_unchanged == 3
        assert second.books_created == 0
        assert highlight_store.books() == snapshot

    @pytest.mark.asyncio
    async def test_same_external_id_updates_note_and_color_keeps_date(
        self, highlight_store: InMemoryHighlightStore
    ) -> None:
        engine = MergeUpsertEngine(highlight_store)
        await engine.apply(
            [make_record("A", external_id="9", note="old", color="yellow", highlighted_at=EARLY)]
        )
        result = await engine.apply(
            [make_record("A", external_id="9", note="new", color="blue", highlighted_at=LATE)]
        )

        highlights = highlight_store.highlights()
        assert len(highlights) == 1
        assert highlights[0].note == "new"
        assert highlights[0].color == "blue"
        assert highlights[0].highlighted_at == EARLY
        assert result.highlights_updated == 1
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_missing_date_is_filled_once(self, highlight_store: InMemoryHighlightStore) -> None:
        engine = MergeUpsertEngine(highlight_store)
        await engine.apply([make_record("A", external_id="9")])
        await engine.apply([make_record("A", external_id="9", highlighted_at=EARLY)])
        await engine.apply([make_record("A", external_id="9", highlighted_at=LATE)])

        assert highlight_store.highlights()[0].highlighted_at == EARLY

    @pytest.mark.asyncio
    async def test_same_text_and_location_without_id_dedups(
        self, highlight_store: InMemoryHighlightStore
    ) -> None:
        engine = MergeUpsertEngine(highlight_store)
        result = await engine.apply(
            [
                make_record("Fear is the mind-killer.", location=12),
                make_record("fear is the  mind-killer.", location=12),
            ]
        )

        assert len(highlight_store.highlights()) == 1
        assert result.highlights_created == 1
        assert result.highlights_unchanged == 1

    @pytest.mark.asyncio
    async def test_same_key_in_one_batch_takes_last_note_and_color(
        self, highlight_store: InMemoryHighlightStore
    ) -> None:
        engine = MergeUpsertEngine(highlight_store)
        batch = [
            make_record("first text", external_id="7", note="old", color="yellow", highlighted_at=EARLY),
            make_record("second text", external_id="7", note="new", color="blue", highlighted_at=LATE),
        ]

        result = await engine.apply(batch)
        again = await engine.apply(batch)

        highlights = highlight_store.highlights()
        assert len(highlights) == 1
        assert (highlights[0].note, highlights[0].color) == ("new", "blue")
        assert highlights[0].text == "first text"
        assert highlights[0].highlighted_at == EARLY
        assert result.highlights_created == 1
        assert result.highlights_unchanged == 1
        assert again.processed == 0

    @pytest.mark.asyncio
    async def test_book_metadata_stored_on_create(self, highlight_store: InMemoryHighlightStore) -> None:
        engine = MergeUpsertEngine(highlight_store)
        await engine.apply(
            [
                make_record(
                    "A",
                    book_external_id="1001",
                    cover_image_url="https://images.example.com/cover.jpg",
                    asin="B07VRS84D1",
                    source_url="https://example.com/book",
                )
            ]
        )

        book = highlight_store.books()[0]
        assert book.external_id == "1001"
        assert book.cover_image_url == "https://images.example.com/cover.jpg"
        assert book.asin == "B07VRS84D1"
        assert book.source_url == "https://example.com/book"

    @pytest.mark.asyncio
    async def test_book_matched_case_insensitively(self, highlight_store: InMemoryHighlightStore) -> None:
        engine = MergeUpsertEngine(highlight_store)
        await engine.apply([make_record("A", title="Dune", author="Frank Herbert")])
        result = await engine.apply([make_record("B", title=" DUNE ", author="frank   herbert")])

        assert result.books_created == 0
        assert len(highlight_store.books()) == 1
        assert highlight_store.books()[0].title == "Dune"

    @pytest.mark.asyncio
    async def test_one_failing_group_is_isolated(self) -> None:
        store = FailingBookStore({"Book 3"})
        engine = MergeUpsertEngine(store)
        records = [make_record(f"text {i}", title=f"Book {i}", author="X") for i in range(1, 6)]

        result = await engine.apply(records)

        assert result.processed == 4
        assert result.failed == 1
        assert result.failed_groups == ["Book 3"]
        assert len(store.books()) == 4

    @pytest.mark.asyncio
    async def test_blank_text_fails_group(self, highlight_store: InMemoryHighlightStore) -> None:
        engine = MergeUpsertEngine(highlight_store)
        result = await engine.apply(
            [make_record("ok", title="Good"), make_record("  ", title="Bad"), make_record("x", title="Bad")]
        )

        assert result.processed == 1
        assert result.failed == 2
        assert result.failed_groups == ["Bad"]

    @pytest.mark.asyncio
    async def test_storage_unavailable_propagates(self) -> None:
        store = FailingBookStore({"Book 2"}, error=StorageUnavailableError("db down"))
        engine = MergeUpsertEngine(store)
        records = [make_record(f"t{i}", title=f"Book {i}") for i in range(1, 4)]

        with pytest.raises(StorageUnavailableError):
            await engine.apply(records)

        assert [b.title for b in store.books()] == ["Book 1"]
