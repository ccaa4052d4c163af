"""In-memory storage backends for local development and tests."""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from datetime import datetime

from src.highlights.base import Book, Highlight
from src.highlights.storage.base import HighlightStore, SettingsBackend

logger = logging.getLogger("marginalia.highlights.storage.memory")


class InMemoryHighlightStore(HighlightStore):
    """Dict-backed HighlightStore.

    Returned aggregates are copies, so callers cannot mutate stored state
    without going through ``update_highlight``.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._books: dict[int, Book] = {}
        self._book_index: dict[tuple[str, str], int] = {}
        self._highlights: dict[int, Highlight] = {}
        self._by_external_id: dict[tuple[int, str], int] = {}
        self._by_fingerprint: dict[tuple[int, str], int] = {}

    async def find_book(self, title_key: str, author_key: str) -> Book | None:
        book_id = self._book_index.get((title_key, author_key))
        if book_id is None:
            return None
        return replace(self._books[book_id], highlights=[])

    async def create_book(self, book: Book, title_key: str, author_key: str) -> Book:
        if (title_key, author_key) in self._book_index:
            raise ValueError(f"Book already exists: {book.title!r} by {book.author!r}")
        stored = replace(book, id=next(self._ids), highlights=[])
        self._books[stored.id] = stored
        self._book_index[(title_key, author_key)] = stored.id
        return replace(stored)

    async def find_highlight_by_external_id(
        self, book_id: int, external_id: str
    ) -> Highlight | None:
        highlight_id = self._by_external_id.get((book_id, external_id))
        return replace(self._highlights[highlight_id]) if highlight_id is not None else None

    async def find_highlight_by_fingerprint(
        self, book_id: int, fingerprint: str
    ) -> Highlight | None:
        highlight_id = self._by_fingerprint.get((book_id, fingerprint))
        return replace(self._highlights[highlight_id]) if highlight_id is not None else None

    async def insert_highlight(self, highlight: Highlight, fingerprint: str) -> Highlight:
        if highlight.book_id not in self._books:
            raise KeyError(f"Unknown book id {highlight.book_id}")
        stored = replace(highlight, id=next(self._ids))
        self._highlights[stored.id] = stored
        if stored.external_id:
            self._by_external_id[(stored.book_id, stored.external_id)] = stored.id
        else:
            self._by_fingerprint[(stored.book_id, fingerprint)] = stored.id
        return replace(stored)

    async def update_highlight(
        self,
        highlight_id: int,
        note: str,
        color: str,
        highlighted_at: datetime | None,
    ) -> None:
        current = self._highlights[highlight_id]
        self._highlights[highlight_id] = replace(
            current, note=note, color=color, highlighted_at=highlighted_at
        )

    async def list_books(self) -> list[Book]:
        return sorted(self.books(), key=lambda book: (book.title.lower(), book.id))

    # ── Inspection helpers ──

    def books(self) -> list[Book]:
        """Return every stored book with its highlights attached, in creation order."""
        result = []
        for book in self._books.values():
            highlights = [
                replace(h) for h in self._highlights.values() if h.book_id == book.id
            ]
            result.append(replace(book, highlights=highlights))
        return result

    def highlights(self) -> list[Highlight]:
        return [replace(h) for h in self._highlights.values()]


class InMemorySettingsBackend(SettingsBackend):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
