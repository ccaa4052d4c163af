"""Render books as Markdown notes for an Obsidian vault.

Layout on disk::

    <export dir>/<source or "unknown">/<sanitized title>.md

Each note starts with YAML frontmatter (source, type, export date, title,
author, highlight count, tags) followed by one callout block per highlight.
Existing notes are overwritten, so re-exporting is idempotent apart from the
``created_at`` date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

import yaml

from src.highlights.base import Book, Highlight, HighlightStyle

logger = logging.getLogger("marginalia.highlights.exporters.markdown")

UNKNOWN_SOURCE = "unknown"
DEFAULT_TAGS = ["highlights", "books"]

_FILENAME_REPLACEMENTS = {
    "/": "-",
    "\\": "-",
    ":": "-",
    "*": "",
    "?": "",
    '"': "'",
    "<": "",
    ">": "",
    "|": "-",
}

# Named provider colors and Kindle-style ARGB hex codes → callout type
_COLOR_CALLOUTS = {
    "yellow": "quote",
    "green": "note",
    "red": "warning",
    "blue": "info",
    "pink": "tip",
    "purple": "tip",
    "#ffffff00": "quote",
    "#ff00ff00": "note",
    "#ffff0000": "warning",
    "#ff0000ff": "info",
    "#ffff00ff": "tip",
}


def sanitize_filename(name: str) -> str:
    """Replace characters that are invalid in file names on common filesystems."""
    for char, replacement in _FILENAME_REPLACEMENTS.items():
        name = name.replace(char, replacement)
    return name.strip() or "untitled"


def callout_type(highlight: Highlight) -> str:
    if highlight.style is HighlightStyle.STRIKETHROUGH:
        return "failure"
    if highlight.style is HighlightStyle.UNDERLINE:
        return "success"
    return _COLOR_CALLOUTS.get(highlight.color.strip().lower(), "quote")


def _render_highlight(highlight: Highlight) -> list[str]:
    stamp = (
        highlight.highlighted_at.strftime("%Y-%m-%d %H:%M")
        if highlight.highlighted_at
        else "(no date)"
    )
    lines = [f"> [!{callout_type(highlight)}] {stamp}"]
    lines.extend(f"> {line}" for line in highlight.text.strip().split("\n"))
    if highlight.note:
        lines.extend([">", f"> **Note:** {highlight.note}"])
    if highlight.style is HighlightStyle.UNDERLINE:
        lines.extend([">", "> *underlined*"])
    elif highlight.style is HighlightStyle.STRIKETHROUGH:
        lines.extend([">", "> *crossed out*"])
    lines.append("")
    return lines


def render_book(book: Book, exported_on: date) -> str:
    """Return the full Markdown note for ``book``."""
    frontmatter = {
        "content_source": book.source or UNKNOWN_SOURCE,
        "content_type": "book_highlights",
        "created_at": exported_on.isoformat(),
        "title": book.title,
        "author": book.author,
        "highlights_count": len(book.highlights),
        "tags": list(DEFAULT_TAGS),
    }
    if book.asin:
        frontmatter["asin"] = book.asin
    if book.source_url:
        frontmatter["source_url"] = book.source_url
    if book.cover_image_url:
        frontmatter["cover_image_url"] = book.cover_image_url

    yaml_str = yaml.safe_dump(frontmatter, allow_unicode=True, default_flow_style=False, sort_keys=False)
    lines = ["---", yaml_str.rstrip("\n"), "---", "", f"# {book.title}"]
    lines.extend([f"*by {book.author}*", ""] if book.author else [""])
    lines.extend(["## Highlights", ""])
    for highlight in book.highlights:
        lines.extend(_render_highlight(highlight))
    return "\n".join(lines)


@dataclass
class ExportResult:
    """Outcome of one ``MarkdownExporter.export`` call."""

    books_exported: int = 0
    highlights_exported: int = 0
    books_failed: int = 0
    failed_titles: list[str] = field(default_factory=list)
    paths: list[Path] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.highlights_exported

    @property
    def failed(self) -> int:
        return self.books_failed

    @property
    def failed_groups(self) -> list[str]:
        return self.failed_titles


class MarkdownExporter:
    """Write books into ``export_dir``, one note per book.

    Blocking filesystem work; callers on the event loop run ``export`` in a
    worker thread.
    """

    def __init__(self, export_dir: str | Path) -> None:
        self.export_dir = Path(export_dir)

    def book_path(self, book: Book) -> Path:
        folder = sanitize_filename(book.source) if book.source else UNKNOWN_SOURCE
        return self.export_dir / folder / f"{sanitize_filename(book.title)}.md"

    def export(
        self, books: list[Book], exported_on: date, result: ExportResult | None = None
    ) -> ExportResult:
        """Write every book; a book that cannot be written is counted and skipped.

        Counts accumulate into ``result`` when one is passed.

        Raises:
            FileNotFoundError: ``export_dir`` does not exist.
        """
        if not self.export_dir.is_dir():
            raise FileNotFoundError(f"Export directory does not exist: {self.export_dir}")

        result = result if result is not None else ExportResult()
        for book in books:
            path = self.book_path(book)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(render_book(book, exported_on), encoding="utf-8")
            except OSError as exc:
                logger.warning("Could not export %r to %s: %s", book.title, path, exc)
                result.books_failed += 1
                result.failed_titles.append(book.title)
                continue
            result.books_exported += 1
            result.highlights_exported += len(book.highlights)
            result.paths.append(path)
        logger.info(
            "Exported %d book(s), %d highlight(s) to %s",
            result.books_exported, result.highlights_exported, self.export_dir,
        )
        return result
