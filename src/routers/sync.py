"""Sync control endpoints: trigger runs, poll status, manage schedule settings."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import SyncServiceDep
from src.highlights.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    CredentialError,
    ProviderError,
    TransientProviderError,
)
from src.highlights.service import SyncService
from src.models.base import ErrorDetail
from src.models.sync import (
    CredentialValidate,
    CredentialValidateResult,
    SyncRunAccepted,
    SyncSettingsRead,
    SyncSettingsUpdate,
    SyncStatusRead,
)

router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    responses={404: {"model": ErrorDetail, "description": "Unknown sync kind"}},
)
logger = logging.getLogger("marginalia.routers.sync")


def _require_kind(service: SyncService, kind: str) -> None:
    if kind not in service.kinds:
        raise HTTPException(status_code=404, detail=f"Unknown sync kind '{kind}'")


def _status(service: SyncService, kind: str) -> SyncStatusRead:
    return SyncStatusRead.from_status(
        kind,
        service.get_status(kind),
        next_run_at=service.get_next_run_time(kind),
        is_running=service.is_running(kind),
        is_syncing=service.is_syncing(kind),
    )


async def _settings(service: SyncService, kind: str) -> SyncSettingsRead:
    info = await service.get_config_info(kind)
    return SyncSettingsRead.from_info(info, service.get_next_run_time(kind))


# ---------- Status ----------

@router.get("", response_model=list[SyncStatusRead])
async def list_sync_status(service: SyncServiceDep) -> Any:
    return [_status(service, kind) for kind in service.kinds]


@router.get("/{kind}/status", response_model=SyncStatusRead)
async def get_sync_status(kind: str, service: SyncServiceDep) -> Any:
    _require_kind(service, kind)
    return _status(service, kind)


# ---------- Runs ----------

@router.post(
    "/{kind}/run",
    response_model=SyncRunAccepted,
    status_code=202,
    responses={409: {"model": ErrorDetail, "description": "A run is already active"}},
)
async def run_sync(kind: str, service: SyncServiceDep) -> Any:
    _require_kind(service, kind)
    try:
        service.trigger(kind)
    except ConcurrencyConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SyncRunAccepted(kind=kind)


# ---------- Settings ----------

@router.get("/{kind}/settings", response_model=SyncSettingsRead)
async def get_sync_settings(kind: str, service: SyncServiceDep) -> Any:
    _require_kind(service, kind)
    return await _settings(service, kind)


@router.put(
    "/{kind}/settings",
    response_model=SyncSettingsRead,
    responses={422: {"model": ErrorDetail, "description": "Invalid schedule"}},
)
async def update_sync_settings(
    kind: str, body: SyncSettingsUpdate, service: SyncServiceDep
) -> Any:
    _require_kind(service, kind)
    try:
        await service.update_settings(
            kind,
            enabled=body.enabled,
            schedule=body.schedule,
            credential=body.token,
            destination=body.destination,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return await _settings(service, kind)


@router.delete("/{kind}/settings", response_model=SyncSettingsRead)
async def reset_sync_settings(kind: str, service: SyncServiceDep) -> Any:
    _require_kind(service, kind)
    try:
        await service.reset_settings(kind)
    except ConfigurationError as exc:
        # Environment schedule is invalid; overrides are cleared regardless
        logger.error("Reset %s settings but could not reschedule: %s", kind, exc)
    return await _settings(service, kind)


@router.post("/{kind}/validate", response_model=CredentialValidateResult)
async def validate_sync_credential(
    kind: str, body: CredentialValidate, service: SyncServiceDep
) -> Any:
    _require_kind(service, kind)
    try:
        await service.validate_credential(kind, body.token)
    except CredentialError as exc:
        return CredentialValidateResult(valid=False, detail=str(exc))
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except TransientProviderError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=f"Provider returned {exc.status_code}") from exc
    return CredentialValidateResult(valid=True)
