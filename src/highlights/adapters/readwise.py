"""Readwise Export API v2 client.

Authenticates with a personal access token sent as ``Authorization: Token <token>``.

Endpoints used:
    /api/v2/auth/    — Token validation (204 on success)
    /api/v2/export/  — Paginated export of books with nested highlights

Export query parameters:
    updatedAfter — RFC 3339 timestamp for incremental sync
    pageCursor   — Opaque cursor from the previous page's ``nextPageCursor``

Rate limiting (429) and server errors (5xx) are retried with exponential
backoff; 401 is surfaced immediately as a CredentialError.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from src.highlights.base import (
    ExportPage,
    HighlightProvider,
    HighlightRecord,
    LocationType,
    format_rfc3339,
)
from src.highlights.config_loader import EngineConfig, RetryPolicy, get_engine_config
from src.highlights.errors import (
    CredentialError,
    MalformedRecordError,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger("marginalia.highlights.readwise")

_LOCATION_TYPES: dict[str, LocationType] = {
    "page": LocationType.PAGE,
    "location": LocationType.LOCATION,
    "time_offset": LocationType.TIME,
    "order": LocationType.POSITION,
}


class ReadwiseClient(HighlightProvider):
    """Resilient client for the Readwise highlight export.

    Holds no per-call state: the token is passed to every call and retry
    counters live on the stack of the request being retried.
    """

    SOURCE_ID = "readwise"
    DISPLAY_NAME = "Readwise"

    def __init__(
        self,
        config: EngineConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        """Initialize the Readwise client.

        Args:
            config:       Engine config (endpoints, timeouts). Defaults to the cached one.
            http_client:  Optional pre-configured httpx client (for testing).
            retry_policy: Override for ``config.retry``.
            sleep:        Awaitable used for backoff waits (defaults to asyncio.sleep).
        """
        self._config = config or get_engine_config()
        self._provider = self._config.provider(self.SOURCE_ID)
        self._retry = retry_policy or self._config.retry
        self._http_client = http_client
        self._sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # HighlightProvider interface
    # ------------------------------------------------------------------

    async def validate_credential(self, token: str) -> None:
        """Check a token against the auth endpoint.

        Uses the same backoff as export requests, so a rate limit at the start
        of a run does not fail it.

        Raises:
            CredentialError:        On 401 (never retried).
            TransientProviderError: When 429, 5xx or transport failures exhaust the budget.
            ProviderError:          On any other non-2xx status.
        """
        await self._get_with_retry(self._provider.auth_url, None, token)
        logger.debug("Readwise: token validated")

    async def fetch_page(
        self,
        token: str,
        cursor: str | None = None,
        updated_after: datetime | str | None = None,
    ) -> ExportPage:
        """Fetch one page of the export.

        Args:
            token:         Readwise access token.
            cursor:        ``nextPageCursor`` from the previous page, or None for the first.
            updated_after: Only return highlights updated after this instant.

        Returns:
            ExportPage with normalized records and the next cursor.
        """
        params: dict[str, str] = {}
        if updated_after:
            params["updatedAfter"] = (
                format_rfc3339(updated_after)
                if isinstance(updated_after, datetime)
                else updated_after
            )
        if cursor:
            params["pageCursor"] = cursor

        response = await self._get_with_retry(self._provider.export_url, params, token)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(response.status_code, "Response body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(response.status_code, "Response body is not a JSON object")

        page = self.normalize_page(payload)
        logger.info(
            "Readwise: fetched page (cursor=%s) with %d highlights, next=%s",
            cursor or "-",
            len(page.records),
            page.next_cursor or "-",
        )
        return page

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize_page(self, payload: dict) -> ExportPage:
        """Flatten an export page (books with nested highlights) into records.

        A malformed book or highlight is logged and counted; the rest of the
        page is still returned.
        """
        records: list[HighlightRecord] = []
        malformed = 0

        for book in payload.get("results") or []:
            if not isinstance(book, dict):
                malformed += 1
                logger.warning("Readwise: skipping non-object book entry: %r", book)
                continue
            for raw in book.get("highlights") or []:
                try:
                    records.append(self.normalize_highlight(book, raw))
                except MalformedRecordError as exc:
                    malformed += 1
                    logger.warning("Readwise: skipping malformed highlight: %s", exc)

        next_cursor = payload.get("nextPageCursor")
        return ExportPage(
            records=records,
            next_cursor=str(next_cursor) if next_cursor else None,
            count=self._safe_int(payload.get("count")),
            malformed=malformed,
        )

    def normalize_highlight(self, book: dict, raw: Any) -> HighlightRecord:
        """Convert one Readwise highlight (plus its parent book) to a HighlightRecord.

        Raises:
            MalformedRecordError: If the highlight is not an object or has no text.
        """
        if not isinstance(raw, dict):
            raise MalformedRecordError(f"highlight is not an object: {raw!r}")

        text = raw.get("text")
        if not isinstance(text, str) or not text.strip():
            raise MalformedRecordError(f"highlight {raw.get('id')!r} has no text")

        title = book.get("title") or book.get("readable_title") or ""
        raw_id = raw.get("id")
        book_id = book.get("user_book_id")

        return HighlightRecord(
            provider_id=self.SOURCE_ID,
            book_title=str(title),
            book_author=str(book.get("author") or ""),
            text=text,
            note=str(raw.get("note") or ""),
            color=str(raw.get("color") or ""),
            location=self._safe_int(raw.get("location")),
            highlighted_at=self._parse_iso_datetime(raw.get("highlighted_at")),
            external_id=str(raw_id) if raw_id not in (None, "") else None,
            location_type=_LOCATION_TYPES.get(
                str(raw.get("location_type") or ""), LocationType.NONE
            ),
            source=self._provider.source_label,
            book_external_id=str(book_id) if book_id not in (None, "") else None,
            cover_image_url=str(book.get("cover_image_url") or ""),
            asin=str(book.get("asin") or ""),
            source_url=str(book.get("source_url") or ""),
        )

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Token {token}"}

    async def _send(self, url: str, params: dict | None, token: str) -> httpx.Response:
        headers = self._build_headers(token)
        if self._http_client:
            return await self._http_client.get(url, params=params, headers=headers)
        async with httpx.AsyncClient(timeout=self._config.http_timeout_seconds) as client:
            return await client.get(url, params=params, headers=headers)

    async def _get_with_retry(self, url: str, params: dict | None, token: str) -> httpx.Response:
        """GET with exponential backoff on 429, 5xx, and transport errors.

        Raises:
            CredentialError:        On 401 (never retried).
            ProviderError:          On any other non-2xx status (never retried).
            TransientProviderError: When the attempt budget is exhausted.
        """
        policy = self._retry
        last_error: TransientProviderError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_for(attempt - 1)
                logger.warning(
                    "Readwise: retrying in %.1fs (attempt %d/%d) after: %s",
                    delay, attempt, policy.max_attempts, last_error,
                )
                await self._sleep(delay)

            try:
                response = await self._send(url, params, token)
            except httpx.TransportError as exc:
                last_error = TransientProviderError(f"Request failed: {exc}")
                continue

            status = response.status_code
            if status == 401:
                raise CredentialError("Invalid or expired Readwise token")
            if status == 429:
                last_error = TransientProviderError(
                    "Readwise API rate limit exceeded", status_code=status
                )
                continue
            if status >= 500:
                last_error = TransientProviderError(
                    f"Readwise server error: HTTP {status}", status_code=status
                )
                continue
            if not 200 <= status < 300:
                raise ProviderError(status, response.text)
            return response

        raise TransientProviderError(
            f"Max retries exceeded after {policy.max_attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
            attempts=policy.max_attempts,
        ) from last_error

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: object) -> datetime | None:
        """Parse an ISO-8601 string to an aware UTC datetime (naive input is assumed UTC)."""
        if not value or not isinstance(value, str):
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
