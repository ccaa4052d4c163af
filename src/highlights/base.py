"""Canonical data models for the Marginalia highlight sync engine.

Every provider client turns its export payloads into ``HighlightRecord``
instances.  The merge engine folds those records into the long-lived ``Book``
and ``Highlight`` aggregates owned by storage, and the coordinator reports
progress through ``SyncStatus``.  These types are the single source of truth
shared by the fetch clients, merge engine, coordinator, and API layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator

logger = logging.getLogger("marginalia.highlights")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    """Format a datetime as an RFC 3339 UTC timestamp (``2026-02-23T06:45:00Z``).

    Naive datetimes are assumed to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class LocationType(str, Enum):
    """How a highlight's ``location`` value should be interpreted."""

    PAGE = "page"
    LOCATION = "location"  # Kindle-style location
    TIME = "time"
    POSITION = "position"
    NONE = "none"


class HighlightStyle(str, Enum):
    HIGHLIGHT = "highlight"
    UNDERLINE = "underline"
    STRIKETHROUGH = "strikethrough"
    NOTE_ONLY = "note_only"


class SyncState(str, Enum):
    """Lifecycle state of one sync kind.

    Allowed transitions::

        idle -> running -> success | failed -> idle
    """

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.SUCCESS, SyncState.FAILED)


_ALLOWED_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.RUNNING}),
    SyncState.RUNNING: frozenset({SyncState.SUCCESS, SyncState.FAILED}),
    SyncState.SUCCESS: frozenset({SyncState.IDLE}),
    SyncState.FAILED: frozenset({SyncState.IDLE}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a SyncStatus is moved along an edge the state machine forbids."""


# ---------------------------------------------------------------------------
# Provider-normalized record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HighlightRecord:
    """One highlight as delivered by a provider, normalized to a common shape.

    Lives for a single request: produced by a fetch client, consumed by the
    merge engine, never stored as-is.

    Attributes:
        provider_id:    Provider slug that produced the record (e.g. 'readwise').
        book_title:     Title of the book the highlight belongs to.
        book_author:    Author of that book (may be empty).
        text:           Highlighted passage.
        note:           User note attached to the highlight.
        color:          Highlight color as reported by the provider.
        location:       Position inside the book; meaning given by location_type.
        highlighted_at: When the user made the highlight (UTC), if known.
        external_id:    Stable provider identifier, if the provider has one.
        location_type:  Interpretation of ``location``.
        source:         Source label stored on newly created books.
        style:          Visual style of the highlight.
        book_external_id: Provider id of the parent book (e.g. Readwise user_book_id).
        cover_image_url:  Cover of the parent book, if any.
        asin:             Amazon ASIN of the parent book, if any.
        source_url:       Original URL of the parent document, if any.
    """

    provider_id: str
    book_title: str
    book_author: str
    text: str
    note: str = ""
    color: str = ""
    location: int | None = None
    highlighted_at: datetime | None = None
    external_id: str | None = None
    location_type: LocationType = LocationType.NONE
    source: str = ""
    style: HighlightStyle = HighlightStyle.HIGHLIGHT
    book_external_id: str | None = None
    cover_image_url: str = ""
    asin: str = ""
    source_url: str = ""


# ---------------------------------------------------------------------------
# Storage aggregates
# ---------------------------------------------------------------------------


@dataclass
class Highlight:
    """Canonical highlight owned by storage.

    ``note`` and ``color`` may change on re-sync.  ``highlighted_at`` is
    immutable once set; ``text``, ``location`` and ``external_id`` define the
    highlight's identity and never change.
    """

    book_id: int
    text: str
    note: str = ""
    style: HighlightStyle = HighlightStyle.HIGHLIGHT
    color: str = ""
    location: int | None = None
    location_type: LocationType = LocationType.NONE
    highlighted_at: datetime | None = None
    external_id: str | None = None
    id: int | None = None


@dataclass
class Book:
    """Canonical book owned by storage.

    Deduplicated by the normalized ``(title, author)`` pair; see
    ``src.highlights.sync.dedup.book_key``.
    """

    title: str
    author: str
    source: str = ""
    highlights: list[Highlight] = field(default_factory=list)
    id: int | None = None
    external_id: str | None = None
    cover_image_url: str = ""
    asin: str = ""
    source_url: str = ""


# ---------------------------------------------------------------------------
# Configuration and run status
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncConfig:
    """Effective sync settings for one sync kind.

    Owned by the settings store.  The coordinator and scheduler read it at
    the start of each run or reschedule and never mutate it.

    Attributes:
        enabled:     Whether scheduled runs are active.
        schedule:    5-field cron expression.
        credential:  Provider API token (opaque).
        destination: Optional target path for file-based sync variants.
    """

    enabled: bool
    schedule: str
    credential: str = ""
    destination: str | None = None

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of the most recent (or current) run of one sync kind.

    Immutable: every transition returns a new snapshot, so readers polling
    ``get_status()`` never observe a half-updated record.

    Attributes:
        state:            Current lifecycle state.
        started_at:       UTC start of the current/last run.
        finished_at:      UTC end of the last run (None while running).
        items_processed:  Highlight rows created or changed by the run.
        items_failed:     Records that could not be merged.
        error_message:    Sanitized failure description.
        error_kind:       Name of the error class that failed the run.
        message:          Human-readable summary of a successful run.
        last_good_cursor: Incremental cursor of the last successful run.
    """

    state: SyncState = SyncState.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    items_processed: int = 0
    items_failed: int = 0
    error_message: str | None = None
    error_kind: str | None = None
    message: str | None = None
    last_good_cursor: str | None = None

    def _transition(self, target: SyncState, **changes: object) -> SyncStatus:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Cannot move sync status from {self.state.value} to {target.value}"
            )
        return replace(self, state=target, **changes)

    def reset(self) -> SyncStatus:
        """Return to idle after a terminal state, keeping the cursor."""
        if self.state is SyncState.IDLE:
            return self
        return self._transition(SyncState.IDLE)

    def begin(self, started_at: datetime) -> SyncStatus:
        """Start a new run; terminal snapshots pass through idle first."""
        return self.reset()._transition(
            SyncState.RUNNING,
            started_at=started_at,
            finished_at=None,
            items_processed=0,
            items_failed=0,
            error_message=None,
            error_kind=None,
            message=None,
        )

    def with_counts(self, processed: int, failed: int) -> SyncStatus:
        return replace(self, items_processed=processed, items_failed=failed)

    def succeed(self, finished_at: datetime, cursor: str, message: str) -> SyncStatus:
        return self._transition(
            SyncState.SUCCESS,
            finished_at=finished_at,
            last_good_cursor=cursor,
            message=message,
        )

    def fail(self, finished_at: datetime, error_message: str, error_kind: str) -> SyncStatus:
        return self._transition(
            SyncState.FAILED,
            finished_at=finished_at,
            error_message=error_message,
            error_kind=error_kind,
        )

    @property
    def is_running(self) -> bool:
        return self.state is SyncState.RUNNING

    def to_json(self) -> dict:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "error_message": self.error_message,
            "error_kind": self.error_kind,
            "message": self.message,
            "last_good_cursor": self.last_good_cursor,
        }

    @classmethod
    def from_json(cls, data: dict) -> SyncStatus:
        def _ts(value: str | None) -> datetime | None:
            if not value:
                return None
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                logger.warning("Could not parse stored timestamp: %r", value)
                return None

        try:
            state = SyncState(data.get("state", SyncState.IDLE.value))
        except ValueError:
            state = SyncState.IDLE

        return cls(
            state=state,
            started_at=_ts(data.get("started_at")),
            finished_at=_ts(data.get("finished_at")),
            items_processed=int(data.get("items_processed", 0)),
            items_failed=int(data.get("items_failed", 0)),
            error_message=data.get("error_message"),
            error_kind=data.get("error_kind"),
            message=data.get("message"),
            last_good_cursor=data.get("last_good_cursor"),
        )


# ---------------------------------------------------------------------------
# Provider client interface
# ---------------------------------------------------------------------------


@dataclass
class ExportPage:
    """One page of a provider export.

    Attributes:
        records:     Normalized highlights on this page, in provider order.
        next_cursor: Opaque cursor for the following page (None on the last page).
        count:       Total result count reported by the provider, if any.
        malformed:   Items on this page that could not be normalized.
    """

    records: list[HighlightRecord] = field(default_factory=list)
    next_cursor: str | None = None
    count: int | None = None
    malformed: int = 0


class HighlightProvider(ABC):
    """Abstract base class for remote highlight-export clients.

    Implementations are stateless between calls: no retry state or
    credential is kept on the instance, so one client can serve every run.

    Subclasses must implement:
        - validate_credential()
        - fetch_page()

    ``iter_pages()`` and ``fetch_all()`` are built on ``fetch_page()``.
    """

    #: Unique slug used as the sync kind (e.g. 'readwise').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    @abstractmethod
    async def validate_credential(self, token: str) -> None:
        """Check a credential with a single round trip.

        Raises:
            CredentialError:        The provider rejected the token.
            TransientProviderError: The provider could not answer right now.
        """

    @abstractmethod
    async def fetch_page(
        self,
        token: str,
        cursor: str | None = None,
        updated_after: datetime | str | None = None,
    ) -> ExportPage:
        """Fetch one export page, retrying transient failures."""

    async def iter_pages(
        self, token: str, updated_after: datetime | str | None = None
    ) -> AsyncIterator[ExportPage]:
        """Yield export pages in cursor order until the provider reports no next page."""
        cursor: str | None = None
        while True:
            page = await self.fetch_page(token, cursor=cursor, updated_after=updated_after)
            yield page
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    async def fetch_all(
        self, token: str, updated_after: datetime | str | None = None
    ) -> list[HighlightRecord]:
        """Fetch every page and concatenate the records in page order."""
        records: list[HighlightRecord] = []
        async for page in self.iter_pages(token, updated_after=updated_after):
            records.extend(page.records)
        return records
