"""Error taxonomy for the highlight sync engine.

    SyncError
    ├── CredentialError           invalid/expired token, never retried
    ├── TransientProviderError    429 / 5xx / transport failure, retried
    ├── ProviderError             any other non-2xx response, terminal
    ├── MalformedRecordError      one record failed normalization or write
    ├── ConcurrencyConflictError  trigger while a run is active
    ├── ConfigurationError        invalid cron or missing setting
    └── StorageUnavailableError   storage collaborator unreachable
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class CredentialError(SyncError):
    """The provider rejected the configured credential (HTTP 401)."""

    def __init__(self, message: str = "Invalid or expired credential") -> None:
        super().__init__(message)


class TransientProviderError(SyncError):
    """The provider is rate limiting or temporarily failing.

    Attributes:
        status_code: HTTP status of the last failed attempt (None for transport errors).
        attempts:    Number of attempts made before giving up (0 until exhausted).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class ProviderError(SyncError):
    """The provider answered with a non-retryable, non-2xx status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Unexpected status {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body


class MalformedRecordError(SyncError):
    """A single incoming record could not be normalized or stored."""


class ConcurrencyConflictError(SyncError):
    """A run was requested while another run of the same kind is active."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Sync '{kind}' is already running")
        self.kind = kind


class ConfigurationError(SyncError, ValueError):
    """A setting is invalid or missing."""


class StorageUnavailableError(SyncError):
    """The storage collaborator cannot be reached; aborts the whole run."""
