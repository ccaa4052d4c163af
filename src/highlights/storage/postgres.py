"""PostgreSQL storage backends built on an asyncpg pool.

Tables (created by ``ensure_schema``):
    books       UNIQUE (title_key, author_key)
    highlights  UNIQUE (book_id, external_id) WHERE external_id IS NOT NULL
                  UNIQUE (book_id, fingerprint) WHERE external_id IS NULL
    settings    PRIMARY KEY (key)

Connection-level failures are raised as ``StorageUnavailableError`` so the
coordinator aborts the run instead of counting every record as failed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

import asyncpg

from src.highlights.base import Book, Highlight, HighlightStyle, LocationType
from src.highlights.errors import StorageUnavailableError
from src.highlights.storage.base import HighlightStore, SettingsBackend
from src.highlights.sync.dedup import build_upsert_query

logger = logging.getLogger("marginalia.highlights.storage.postgres")

SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id          BIGSERIAL PRIMARY KEY,
    title       TEXT NOT NULL,
    author      TEXT NOT NULL DEFAULT '',
    source      TEXT NOT NULL DEFAULT '',
    external_id TEXT,
    cover_image_url TEXT NOT NULL DEFAULT '',
    asin        TEXT NOT NULL DEFAULT '',
    source_url  TEXT NOT NULL DEFAULT '',
    title_key   TEXT NOT NULL,
    author_key  TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (title_key, author_key)
);

CREATE TABLE IF NOT EXISTS highlights (
    id              BIGSERIAL PRIMARY KEY,
    book_id         BIGINT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    text            TEXT NOT NULL,
    note            TEXT NOT NULL DEFAULT '',
    style           TEXT NOT NULL DEFAULT 'highlight',
    color           TEXT NOT NULL DEFAULT '',
    location        INTEGER,
    location_type   TEXT NOT NULL DEFAULT 'none',
    highlighted_at  TIMESTAMPTZ,
    external_id     TEXT,
    fingerprint     TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS highlights_book_external_id
    ON highlights (book_id, external_id) WHERE external_id IS NOT NULL;

CREATE UNIQUE INDEX IF NOT EXISTS highlights_book_fingerprint
    ON highlights (book_id, fingerprint) WHERE external_id IS NULL;

CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# Errors that mean "the database is gone", not "this statement failed"
_UNAVAILABLE_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
    OSError,
    asyncio.TimeoutError,
)

_BOOK_COLUMNS = "id, title, author, source, external_id, cover_image_url, asin, source_url"

_HIGHLIGHT_COLUMNS = (
    "id, book_id, text, note, style, color, location, location_type, "
    "highlighted_at, external_id"
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the sync tables if they do not exist yet."""
    async with _acquire(pool) as conn:
        await conn.execute(SCHEMA)
    logger.info("Highlight storage schema ensured")


@asynccontextmanager
async def _acquire(pool: asyncpg.Pool) -> AsyncGenerator[asyncpg.Connection, None]:
    try:
        async with pool.acquire() as conn:
            yield conn
    except _UNAVAILABLE_ERRORS as exc:
        raise StorageUnavailableError(f"Database unavailable: {exc}") from exc


def _row_to_book(row: asyncpg.Record) -> Book:
    return Book(
        id=row["id"],
        title=row["title"],
        author=row["author"],
        source=row["source"],
        external_id=row["external_id"],
        cover_image_url=row["cover_image_url"],
        asin=row["asin"],
        source_url=row["source_url"],
    )


def _row_to_highlight(row: asyncpg.Record) -> Highlight:
    return Highlight(
        id=row["id"],
        book_id=row["book_id"],
        text=row["text"],
        note=row["note"],
        style=HighlightStyle(row["style"]),
        color=row["color"],
        location=row["location"],
        location_type=LocationType(row["location_type"]),
        highlighted_at=row["highlighted_at"],
        external_id=row["external_id"],
    )


class PostgresHighlightStore(HighlightStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_book(self, title_key: str, author_key: str) -> Book | None:
        async with _acquire(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_BOOK_COLUMNS} FROM books "
                "WHERE title_key = $1 AND author_key = $2",
                title_key,
                author_key,
            )
        return _row_to_book(row) if row else None

    async def create_book(self, book: Book, title_key: str, author_key: str) -> Book:
        query = build_upsert_query(
            "books",
            [
                "title",
                "author",
                "source",
                "external_id",
                "cover_image_url",
                "asin",
                "source_url",
                "title_key",
                "author_key",
            ],
            ["title_key", "author_key"],
            update_columns=[],
            returning=_BOOK_COLUMNS,
        )
        async with _acquire(self._pool) as conn:
            row = await conn.fetchrow(
                query,
                book.title,
                book.author,
                book.source,
                book.external_id,
                book.cover_image_url,
                book.asin,
                book.source_url,
                title_key,
                author_key,
            )
        if row is None:
            # Lost a race with a concurrent insert of the same book
            existing = await self.find_book(title_key, author_key)
            if existing is None:
                raise RuntimeError(f"Book vanished after conflict: {book.title!r}")
            return existing
        return _row_to_book(row)

    async def find_highlight_by_external_id(
        self, book_id: int, external_id: str
    ) -> Highlight | None:
        async with _acquire(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_HIGHLIGHT_COLUMNS} FROM highlights "
                "WHERE book_id = $1 AND external_id = $2",
                book_id,
                external_id,
            )
        return _row_to_highlight(row) if row else None

    async def find_highlight_by_fingerprint(
        self, book_id: int, fingerprint: str
    ) -> Highlight | None:
        async with _acquire(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_HIGHLIGHT_COLUMNS} FROM highlights "
                "WHERE book_id = $1 AND fingerprint = $2 AND external_id IS NULL",
                book_id,
                fingerprint,
            )
        return _row_to_highlight(row) if row else None

    async def insert_highlight(self, highlight: Highlight, fingerprint: str) -> Highlight:
        async with _acquire(self._pool) as conn:
            row = await conn.fetchrow(
                "INSERT INTO highlights (book_id, text, note, style, color, location, "
                "location_type, highlighted_at, external_id, fingerprint) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10) "
                f"RETURNING {_HIGHLIGHT_COLUMNS}",
                highlight.book_id,
                highlight.text,
                highlight.note,
                highlight.style.value,
                highlight.color,
                highlight.location,
                highlight.location_type.value,
                highlight.highlighted_at,
                highlight.external_id,
                fingerprint,
            )
        return _row_to_highlight(row)

    async def update_highlight(
        self,
        highlight_id: int,
        note: str,
        color: str,
        highlighted_at: datetime | None,
    ) -> None:
        async with _acquire(self._pool) as conn:
            await conn.execute(
                "UPDATE highlights SET note = $2, color = $3, "
                "highlighted_at = COALESCE(highlighted_at, $4), updated_at = NOW() "
                "WHERE id = $1",
                highlight_id,
                note,
                color,
                highlighted_at,
            )


    async def list_books(self) -> list[Book]:
        async with _acquire(self._pool) as conn:
            book_rows = await conn.fetch(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY lower(title), id")
            highlight_rows = await conn.fetch(
                f"SELECT {_HIGHLIGHT_COLUMNS} FROM highlights "
                "ORDER BY book_id, location NULLS LAST, id"
            )
        by_book: dict[int, list[Highlight]] = {}
        for row in highlight_rows:
            by_book.setdefault(row["book_id"], []).append(_row_to_highlight(row))
        books = []
        for row in book_rows:
            book = _row_to_book(row)
            book.highlights = by_book.get(book.id, [])
            books.append(book)
        return books

class PostgresSettingsBackend(SettingsBackend):
    _UPSERT = build_upsert_query("settings", ["key", "value"], ["key"])

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, key: str) -> str | None:
        async with _acquire(self._pool) as conn:
            return await conn.fetchval("SELECT value FROM settings WHERE key = $1", key)

    async def set(self, key: str, value: str) -> None:
        async with _acquire(self._pool) as conn:
            await conn.execute(self._UPSERT, key, value)

    async def delete(self, key: str) -> None:
        async with _acquire(self._pool) as conn:
            await conn.execute("DELETE FROM settings WHERE key = $1", key)
