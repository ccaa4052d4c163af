"""Pydantic models for the sync control surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.highlights.base import SyncState, SyncStatus
from src.highlights.settings_store import SyncConfigInfo
from src.highlights.sync.cron import SCHEDULE_PRESETS
from src.models.base import MarginaliaBase


# ---------- Status ----------

class SyncStatusRead(MarginaliaBase):
    kind: str
    state: SyncState
    started_at: datetime | None = None
    finished_at: datetime | None = None
    items_processed: int = 0
    items_failed: int = 0
    error_message: str | None = None
    error_kind: str | None = None
    message: str | None = None
    last_good_cursor: str | None = None
    next_run_at: datetime | None = None
    is_running: bool = False  # scheduler loop alive
    is_syncing: bool = False  # a run is in progress

    @classmethod
    def from_status(
        cls,
        kind: str,
        status: SyncStatus,
        next_run_at: datetime | None,
        is_running: bool,
        is_syncing: bool,
    ) -> SyncStatusRead:
        return cls(
            kind=kind,
            state=status.state,
            started_at=status.started_at,
            finished_at=status.finished_at,
            items_processed=status.items_processed,
            items_failed=status.items_failed,
            error_message=status.error_message,
            error_kind=status.error_kind,
            message=status.message,
            last_good_cursor=status.last_good_cursor,
            next_run_at=next_run_at,
            is_running=is_running,
            is_syncing=is_syncing,
        )


class SyncRunAccepted(MarginaliaBase):
    kind: str
    accepted: bool = True
    message: str = "Sync started"


# ---------- Settings ----------

class SchedulePresetRead(MarginaliaBase):
    label: str
    value: str
    description: str


class SyncSettingsRead(MarginaliaBase):
    kind: str
    enabled: bool
    enabled_source: str
    schedule: str
    schedule_source: str
    schedule_description: str
    has_credential: bool
    credential_masked: str
    credential_source: str
    destination: str | None = None
    destination_source: str
    next_run_at: datetime | None = None
    presets: list[SchedulePresetRead] = Field(default_factory=list)

    @classmethod
    def from_info(cls, info: SyncConfigInfo, next_run_at: datetime | None) -> SyncSettingsRead:
        return cls(
            kind=info.kind,
            enabled=info.enabled,
            enabled_source=info.enabled_source,
            schedule=info.schedule,
            schedule_source=info.schedule_source,
            schedule_description=info.schedule_description,
            has_credential=info.has_credential,
            credential_masked=info.credential_masked,
            credential_source=info.credential_source,
            destination=info.destination,
            destination_source=info.destination_source,
            next_run_at=next_run_at,
            presets=[
                SchedulePresetRead(label=p.label, value=p.value, description=p.description)
                for p in SCHEDULE_PRESETS
            ],
        )


class SyncSettingsUpdate(MarginaliaBase):
    enabled: bool | None = None
    schedule: str | None = Field(default=None, max_length=100)
    # Empty or omitted keeps the stored token
    token: str | None = Field(default=None, max_length=500)
    destination: str | None = Field(default=None, max_length=1000)


class CredentialValidate(MarginaliaBase):
    # Omitted means "validate the stored token"
    token: str | None = Field(default=None, max_length=500)


class CredentialValidateResult(MarginaliaBase):
    valid: bool
    detail: str | None = None
