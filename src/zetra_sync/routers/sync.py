from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.config import settings
from zetra_sync.db import get_session
from zetra_sync.deps import get_current_user
from zetra_sync.domain.mobile_payload import is_mobile_user_agent, optimize_for_mobile
from zetra_sync.domain.operations import SyncOperation
from zetra_sync.models import User
from zetra_sync.schemas_sync import (
    ApiEnvelope,
    ConflictResolutionRequest,
    SyncOperationIn,
    SyncRequest,
)
from zetra_sync.services import conflicts_service, sync_service
from zetra_sync.sync_utils import datetime_to_ms, ms_to_iso

router = APIRouter(prefix="/sync", tags=["sync"])


def _to_operation(raw: SyncOperationIn, *, device_id: str, user_id: int) -> SyncOperation:
    return SyncOperation(
        id=raw.id,
        entity_type=raw.entity_type,
        entity_id=raw.entity_id,
        kind=raw.kind,
        payload=dict(raw.payload),
        client_timestamp_ms=datetime_to_ms(raw.client_timestamp),
        declared_version=raw.declared_version,
        checksum=raw.checksum,
        device_id=device_id,
        user_id=user_id,
    )


@router.post("", response_model=ApiEnvelope)
async def synchronize(
    payload: SyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user_id = int(user.id or 0)
    operations = [
        _to_operation(op, device_id=payload.device_id, user_id=user_id)
        for op in payload.operations
    ]
    last_sync_ms = datetime_to_ms(payload.last_sync) if payload.last_sync is not None else None

    result = await sync_service.synchronize(
        session=session,
        user=user,
        device_id=payload.device_id,
        operations=operations,
        last_sync_ms=last_sync_ms,
        sync_mode=payload.sync_mode,
    )

    server_time_ms = int(result.pop("serverTimeMs"))
    server_changes = result.pop("serverChanges")
    horizon_s = (
        settings.sync_next_sync_conflict_seconds
        if result["conflicts"]
        else settings.sync_next_sync_idle_seconds
    )
    data: dict[str, Any] = {
        "syncResult": result,
        "serverChanges": server_changes,
        "hasMoreChanges": result["hasMoreChanges"],
        "timestamp": ms_to_iso(server_time_ms),
        "nextSyncRecommended": ms_to_iso(server_time_ms + horizon_s * 1000),
    }

    if settings.sync_mobile_optimization_enabled and is_mobile_user_agent(
        request.headers.get("user-agent")
    ):
        data = optimize_for_mobile(
            data,
            compression_enabled=payload.compression_enabled,
            optimized_at=str(ms_to_iso(server_time_ms)),
        )

    return {
        "success": True,
        "data": data,
        "meta": {
            "deviceId": payload.device_id,
            "batchId": result["batchId"],
            "syncMode": payload.sync_mode,
            "operationsProcessed": result["operationsProcessed"],
            "conflictsFound": len(result["conflicts"]),
            "errorsFound": len(result["errors"]),
            "serverChanges": len(server_changes),
        },
    }


@router.get("/conflicts", response_model=ApiEnvelope)
async def list_conflicts(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    conflicts = await conflicts_service.get_pending_conflicts(session=session, user=user)
    stats = await conflicts_service.get_sync_stats(session=session, user=user)
    return {
        "success": True,
        "data": {
            "conflicts": conflicts,
            "stats": stats,
            "hasConflicts": bool(conflicts),
            "requiresAttention": any(c["requiresAttention"] for c in conflicts),
        },
    }


@router.get("/conflicts/{conflict_id}", response_model=ApiEnvelope)
async def get_conflict(
    conflict_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    conflict = await conflicts_service.get_conflict(
        session=session, user=user, conflict_id=conflict_id
    )
    return {"success": True, "data": {"conflict": conflict}}


@router.put("/conflicts/{conflict_id}", response_model=ApiEnvelope)
async def resolve_conflict(
    conflict_id: str,
    payload: ConflictResolutionRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    if payload.conflict_id is not None and payload.conflict_id != conflict_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="conflictId in body does not match the path",
        )
    resolved = await conflicts_service.resolve_conflict(
        session=session,
        user=user,
        conflict_id=conflict_id,
        strategy=payload.resolution,
        custom_data=payload.custom_data,
    )
    return {"success": True, "data": resolved}


@router.get("/devices/{device_id}/pending", response_model=ApiEnvelope)
async def list_pending_operations(
    device_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    pending = await sync_service.list_pending_operations(
        session=session, user=user, device_id=device_id
    )
    return {"success": True, "data": {"deviceId": device_id, "operations": pending}}
