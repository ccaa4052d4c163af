"""File exporters that write stored books out of Marginalia.

Available exporters:
    MarkdownExporter — one Markdown note per book, Obsidian callout syntax
"""

from src.highlights.exporters.markdown import MarkdownExporter

__all__ = [
    "MarkdownExporter",
]
