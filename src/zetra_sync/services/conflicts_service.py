from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.config import settings
from zetra_sync.domain.operations import SyncOperation
from zetra_sync.domain.resolution import resolve
from zetra_sync.errors import ConflictNotFoundError, PersistenceError, StaleVersionError
from zetra_sync.models import SyncConflict, User
from zetra_sync.repositories import (
    conflicts_repo,
    entity_versions_repo,
    operation_log_repo,
    sync_state_repo,
)
from zetra_sync.sync_utils import datetime_to_iso, datetime_to_ms, ms_to_iso, now_ms

logger = logging.getLogger(__name__)


def requires_attention(row: SyncConflict, *, at_ms: int | None = None) -> bool:
    # Delete conflicts always need a person; a concurrent one once it outlives
    # the retry horizon the client was given.
    if row.conflict_type == "delete":
        return True
    age_ms = (at_ms if at_ms is not None else now_ms()) - datetime_to_ms(row.detected_at)
    return age_ms >= settings.sync_next_sync_conflict_seconds * 1000


def serialize_conflict(row: SyncConflict) -> dict[str, object]:
    return {
        "id": row.id,
        "entityType": row.entity_type,
        "entityId": row.entity_id,
        "conflictType": row.conflict_type,
        "deviceId": row.device_id,
        "userId": row.user_id,
        "localOperation": dict(row.local_operation_json or {}),
        "remoteState": dict(row.remote_state_json or {}),
        "remoteVersion": row.remote_version,
        "detectedAt": datetime_to_iso(row.detected_at),
        "resolvedAt": datetime_to_iso(row.resolved_at),
        "resolution": row.resolution,
        "resolvedBy": row.resolved_by,
        "resolvedVersion": row.resolved_version,
        "requiresAttention": row.resolved_at is None and requires_attention(row),
    }


async def get_pending_conflicts(*, session: AsyncSession, user: User) -> list[dict[str, object]]:
    # Unresolved conflicts never expire; they block convergence until resolved.
    rows = await conflicts_repo.list_pending(session, org_id=user.org_id, user_id=int(user.id or 0))
    return [serialize_conflict(r) for r in rows]


async def get_conflict(*, session: AsyncSession, user: User, conflict_id: str) -> dict[str, object]:
    row = await conflicts_repo.get(session, org_id=user.org_id, conflict_id=conflict_id)
    if row is None:
        raise ConflictNotFoundError(f"conflict not found: {conflict_id}")
    return serialize_conflict(row)


async def resolve_conflict(
    *,
    session: AsyncSession,
    user: User,
    conflict_id: str,
    strategy: str,
    custom_data: object = None,
) -> dict[str, object]:
    """Close a pending conflict with local, remote or custom data.

    The entity version moves by exactly one through the same compare-and-swap
    used by batch apply; a lost race re-reads the entity and tries again.
    """
    user_id = int(user.id or 0)
    try:
        row = await conflicts_repo.get(session, org_id=user.org_id, conflict_id=conflict_id)
        if row is None or row.resolved_at is not None:
            raise ConflictNotFoundError(f"conflict not found or already resolved: {conflict_id}")

        local_operation = SyncOperation.from_json(dict(row.local_operation_json or {}))

        for attempt in range(settings.sync_cas_max_retries + 1):
            current = await entity_versions_repo.get_snapshot(
                session,
                org_id=user.org_id,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
            )
            plan = resolve(local_operation, current, strategy, custom_data)
            try:
                await entity_versions_repo.compare_and_swap(
                    session,
                    org_id=user.org_id,
                    plan=plan,
                    modified_at_ms=now_ms(),
                    modified_by=user_id,
                    device_id=local_operation.device_id or row.device_id,
                    batch_id=None,
                    operation_id=f"resolve:{conflict_id}",
                )
            except StaleVersionError:
                logger.info(
                    "conflict resolve lost version race conflict=%s attempt=%s",
                    conflict_id,
                    attempt + 1,
                )
                continue

            won = await conflicts_repo.mark_resolved(
                session,
                org_id=user.org_id,
                conflict_id=conflict_id,
                resolution=strategy,
                resolved_by=user_id,
                resolved_version=plan.new_version,
            )
            if not won:
                await session.rollback()
                raise ConflictNotFoundError(f"conflict already resolved: {conflict_id}")

            await session.commit()
            logger.info(
                "conflict resolved conflict=%s strategy=%s entity=%s/%s version=%s user=%s",
                conflict_id,
                strategy,
                row.entity_type,
                row.entity_id,
                plan.new_version,
                user_id,
            )
            resolved = await conflicts_repo.get(
                session, org_id=user.org_id, conflict_id=conflict_id
            )
            resolved_at = resolved.resolved_at if resolved is not None else None
            return {
                "conflictId": conflict_id,
                "resolution": strategy,
                "resolvedAt": datetime_to_iso(resolved_at),
                "resolvedBy": user_id,
                "version": plan.new_version,
                "entityType": row.entity_type,
                "entityId": row.entity_id,
            }
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("conflict resolve failed conflict=%s", conflict_id)
        raise PersistenceError("failed to resolve conflict") from exc

    raise PersistenceError(
        f"conflict {conflict_id} could not be resolved: entity kept changing",
        details={"retries": settings.sync_cas_max_retries},
    )


async def get_sync_stats(*, session: AsyncSession, user: User) -> dict[str, Any]:
    user_id = int(user.id or 0)
    pending, resolved = await conflicts_repo.count_for_user(
        session, org_id=user.org_id, user_id=user_id
    )
    by_status = await operation_log_repo.count_by_status(
        session, org_id=user.org_id, user_id=user_id
    )
    devices = await sync_state_repo.list_for_user(session, org_id=user.org_id, user_id=user_id)

    total = sum(by_status.values())
    errored = by_status.get("error", 0)
    last_sync_ms = max((int(d.last_sync_at_ms or 0) for d in devices), default=0)
    return {
        "pendingConflicts": pending,
        "resolvedConflicts": resolved,
        "operationsLogged": total,
        "operationsApplied": by_status.get("applied", 0),
        "operationsMerged": by_status.get("merged", 0),
        "operationsPending": by_status.get("pending", 0),
        "operationsErrored": errored,
        "errorRate": (errored / total) if total else 0.0,
        "devices": len(devices),
        "lastSync": ms_to_iso(last_sync_ms),
    }
