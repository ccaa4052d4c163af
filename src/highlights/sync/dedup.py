"""Deduplication keys for highlight ingestion.

Prevents storing the same book or highlight twice when a record arrives
again on a later sync or through a second source.

Dedup keys:
    - books:      (normalized title, normalized author) — UNIQUE constraint
    - highlights: (book_id, external_id)                 — when the provider has an id
    - highlights: (book_id, normalized text, location)   — fingerprint otherwise
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import replace

from src.highlights.base import HighlightRecord

logger = logging.getLogger("marginalia.highlights.sync.dedup")

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str | None) -> str:
    """Trim, collapse internal whitespace, and lowercase.

    Args:
        value: Raw title, author, or passage (None is treated as empty).

    Returns:
        Normalized string used for equality comparisons.
    """
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip().casefold()


def book_key(title: str, author: str) -> tuple[str, str]:
    """Generate the dedup key for a book.

    Matches the UNIQUE constraint on books: (title_key, author_key).
    """
    return normalize_text(title), normalize_text(author)


def record_book_key(record: HighlightRecord) -> tuple[str, str]:
    return book_key(record.book_title, record.book_author)


def text_fingerprint(text: str, location: int | None) -> str:
    """Compute a content fingerprint for a highlight without an external id.

    Args:
        text:     Highlighted passage.
        location: Position inside the book (None when unknown).

    Returns:
        SHA-256 hex digest of the normalized text and location.
    """
    canonical = f"{normalize_text(text)}\x1f{'' if location is None else location}"
    return hashlib.sha256(canonical.encode()).hexdigest()


def highlight_key(record: HighlightRecord) -> str:
    """Generate the in-book dedup key for a highlight record.

    External ids win; records without one fall back to the text fingerprint.
    The two namespaces are prefixed so they never collide.
    """
    if record.external_id:
        return f"ext:{record.external_id}"
    return f"fp:{text_fingerprint(record.text, record.location)}"


def collapse_records(records: list[HighlightRecord]) -> tuple[list[HighlightRecord], int]:
    """Fold records that share a highlight key into one record per key.

    Storage UNIQUE constraints stay authoritative; this only makes sure each
    key is written once per batch.  The first occurrence keeps its identity
    fields and position in the output; ``note`` and ``color`` come from the
    last occurrence, and ``highlighted_at`` is the first one reported.

    Returns:
        ``(collapsed, duplicates)`` where ``duplicates`` is how many input
        records were folded into an earlier one.

    Usage::

        collapsed, duplicates = collapse_records(group)
    """
    merged: dict[str, HighlightRecord] = {}
    duplicates = 0
    for record in records:
        key = highlight_key(record)
        earlier = merged.get(key)
        if earlier is None:
            merged[key] = record
            continue
        duplicates += 1
        logger.debug("Collapsing duplicate highlight record: %s", key)
        merged[key] = replace(
            earlier,
            note=record.note,
            color=record.color,
            highlighted_at=earlier.highlighted_at or record.highlighted_at,
        )
    return list(merged.values()), duplicates


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT upsert query.

    Generates idempotent writes: safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        returning:        Optional RETURNING clause body (e.g. ``"id"``).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query
