"""Merge normalized highlight records into canonical Book/Highlight aggregates.

Workflow for one batch:
1. Group records by normalized (title, author), keeping encounter order
2. Find the book for each group, creating it if absent
3. For each record, look up the highlight by external id (or text fingerprint)
4. Collapse records sharing a highlight key; the last one supplies note/color
5. Insert new highlights; for existing ones update note/color only when they
   changed, and fill highlighted_at only if it was never set

Writes are idempotent: applying the same batch twice leaves storage
unchanged and reports ``processed == 0`` the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.highlights.base import Book, Highlight, HighlightRecord
from src.highlights.errors import MalformedRecordError, StorageUnavailableError
from src.highlights.storage.base import HighlightStore
from src.highlights.sync.dedup import collapse_records, record_book_key, text_fingerprint

logger = logging.getLogger("marginalia.highlights.sync.merge")


@dataclass
class MergeResult:
    """Outcome of one ``MergeUpsertEngine.apply`` call.

    Attributes:
        books_created:       New Book rows.
        highlights_created:  New Highlight rows.
        highlights_updated:  Existing highlights whose note/color/date changed.
        highlights_unchanged: Records that matched an identical stored highlight.
        records_failed:      Records that could not be merged.
        failed_groups:       Titles of the book groups that failed.
    """

    books_created: int = 0
    highlights_created: int = 0
    highlights_updated: int = 0
    highlights_unchanged: int = 0
    records_failed: int = 0
    failed_groups: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        """Highlight rows created or changed."""
        return self.highlights_created + self.highlights_updated

    @property
    def failed(self) -> int:
        return self.records_failed

    def merge(self, other: MergeResult) -> None:
        """Accumulate another result into this one."""
        self.books_created += other.books_created
        self.highlights_created += other.highlights_created
        self.highlights_updated += other.highlights_updated
        self.highlights_unchanged += other.highlights_unchanged
        self.records_failed += other.records_failed
        self.failed_groups.extend(other.failed_groups)


class MergeUpsertEngine:
    """Fold HighlightRecords into storage with dedup and idempotent upsert.

    Usage::

        engine = MergeUpsertEngine(store)
        result = await engine.apply(page.records)
        result.processed, result.failed
    """

    def __init__(self, store: HighlightStore) -> None:
        self._store = store

    async def apply(self, records: list[HighlightRecord]) -> MergeResult:
        """Merge one batch of records.

        A failure inside one book group is logged, that group's records are
        counted as failed, and the remaining groups are still applied.

        Raises:
            StorageUnavailableError: Storage cannot be reached; nothing after
                                     the failing write is attempted.
        """
        result = MergeResult()
        groups: dict[tuple[str, str], list[HighlightRecord]] = {}
        for record in records:
            groups.setdefault(record_book_key(record), []).append(record)

        for key, group in groups.items():
            try:
                group_result = await self._apply_group(key, group)
            except StorageUnavailableError:
                raise
            except Exception as exc:
                title = group[0].book_title
                logger.warning(
                    "Merge failed for book %r (%d records): %s", title, len(group), exc
                )
                result.records_failed += len(group)
                result.failed_groups.append(title)
                continue
            result.merge(group_result)

        logger.debug(
            "Merged %d records: %d created, %d updated, %d unchanged, %d failed",
            len(records),
            result.highlights_created,
            result.highlights_updated,
            result.highlights_unchanged,
            result.records_failed,
        )
        return result

    async def _apply_group(
        self, key: tuple[str, str], group: list[HighlightRecord]
    ) -> MergeResult:
        for record in group:
            if not record.text or not record.text.strip():
                raise MalformedRecordError(
                    f"highlight {record.external_id or '?'} in {record.book_title!r} has no text"
                )

        result = MergeResult()
        title_key, author_key = key
        first = group[0]

        book = await self._store.find_book(title_key, author_key)
        if book is None:
            book = await self._store.create_book(
                Book(
                    title=first.book_title.strip(),
                    author=first.book_author.strip(),
                    source=first.source or first.provider_id,
                    external_id=first.book_external_id,
                    cover_image_url=first.cover_image_url,
                    asin=first.asin,
                    source_url=first.source_url,
                ),
                title_key,
                author_key,
            )
            result.books_created += 1
            logger.info("Created book %r by %r", book.title, book.author)

        # Repeated keys inside one batch are written once, latest note/color winning
        collapsed, duplicates = collapse_records(group)
        result.highlights_unchanged += duplicates
        for record in collapsed:
            await self._upsert_highlight(book, record, result)

        return result

    async def _upsert_highlight(
        self, book: Book, record: HighlightRecord, result: MergeResult
    ) -> None:
        fingerprint = text_fingerprint(record.text, record.location)

        if record.external_id:
            existing = await self._store.find_highlight_by_external_id(
                book.id, record.external_id
            )
        else:
            existing = await self._store.find_highlight_by_fingerprint(book.id, fingerprint)

        if existing is None:
            await self._store.insert_highlight(
                Highlight(
                    book_id=book.id,
                    text=record.text,
                    note=record.note,
                    style=record.style,
                    color=record.color,
                    location=record.location,
                    location_type=record.location_type,
                    highlighted_at=record.highlighted_at,
                    external_id=record.external_id,
                ),
                fingerprint,
            )
            result.highlights_created += 1
            return

        highlighted_at = existing.highlighted_at or record.highlighted_at
        if (
            existing.note == record.note
            and existing.color == record.color
            and existing.highlighted_at == highlighted_at
        ):
            result.highlights_unchanged += 1
            return

        await self._store.update_highlight(
            existing.id, record.note, record.color, highlighted_at
        )
        result.highlights_updated += 1
