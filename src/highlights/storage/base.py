"""Storage collaborator interfaces.

The sync engine never talks to a database directly.  It depends on two
small async interfaces:

    HighlightStore   — lookup/create/list books, lookup/insert/update highlights
    SettingsBackend  — string key/value settings (sync config, run status)

Implementations must raise ``StorageUnavailableError`` when the backing
store cannot be reached; any other exception is treated as a failure of the
single write that raised it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.highlights.base import Book, Highlight


class HighlightStore(ABC):
    """Persistent store for Book and Highlight aggregates."""

    @abstractmethod
    async def find_book(self, title_key: str, author_key: str) -> Book | None:
        """Return the book whose normalized (title, author) matches, or None."""

    @abstractmethod
    async def create_book(self, book: Book, title_key: str, author_key: str) -> Book:
        """Persist a new book and return it with ``id`` populated."""

    @abstractmethod
    async def find_highlight_by_external_id(
        self, book_id: int, external_id: str
    ) -> Highlight | None:
        ...

    @abstractmethod
    async def find_highlight_by_fingerprint(
        self, book_id: int, fingerprint: str
    ) -> Highlight | None:
        ...

    @abstractmethod
    async def insert_highlight(self, highlight: Highlight, fingerprint: str) -> Highlight:
        """Persist a new highlight and return it with ``id`` populated."""

    @abstractmethod
    async def update_highlight(
        self,
        highlight_id: int,
        note: str,
        color: str,
        highlighted_at: datetime | None,
    ) -> None:
        """Overwrite the mutable fields of an existing highlight."""

    @abstractmethod
    async def list_books(self) -> list[Book]:
        """Return every book with its highlights attached, ordered by title."""


class SettingsBackend(ABC):
    """Key/value settings storage."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...
