from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.config import settings
from zetra_sync.domain.conflict_detector import (
    CLEAN,
    DELETE_CONFLICT,
    classify,
)
from zetra_sync.domain.merge import try_auto_merge
from zetra_sync.domain.operations import EntitySnapshot, SyncOperation
from zetra_sync.domain.planner import ApplyPlan, plan_clean_apply, plan_write
from zetra_sync.domain.validator import check_shape, validate, verify_checksum
from zetra_sync.errors import (
    OperationAlreadyProcessedError,
    PersistenceError,
    StaleVersionError,
    SyncError,
    ValidationError,
)
from zetra_sync.models import EntityVersion, SyncOperationLog, User
from zetra_sync.repositories import (
    conflicts_repo,
    entity_versions_repo,
    operation_log_repo,
    sync_state_repo,
)
from zetra_sync.services.conflicts_service import serialize_conflict
from zetra_sync.sync_utils import clamp_client_timestamp_ms, datetime_to_iso, ms_to_iso, now_ms

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATING = "VALIDATING"
    CLEAN_APPLY = "CLEAN_APPLY"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    PERSISTED = "PERSISTED"
    DELTA_COMPUTED = "DELTA_COMPUTED"
    RESPONDED = "RESPONDED"
    FAILED = "FAILED"


def _transition(batch_id: str, state: BatchState) -> None:
    logger.debug("sync batch=%s state=%s", batch_id, state.value)


def _result(
    op: SyncOperation,
    status: str,
    *,
    version: int | None = None,
    conflict_id: str | None = None,
    reason: str | None = None,
    code: str | None = None,
    duplicate: bool = False,
) -> dict[str, Any]:
    return {
        "operationId": op.id,
        "entityType": op.entity_type,
        "entityId": op.entity_id,
        "status": status,
        "version": version,
        "conflictId": conflict_id,
        "reason": reason,
        "code": code,
        "duplicate": duplicate,
    }


def _error(op: SyncOperation, code: str, reason: str) -> dict[str, Any]:
    return {
        "operationId": op.id,
        "entityType": op.entity_type,
        "entityId": op.entity_id,
        "code": code,
        "reason": reason,
    }


def _stored_result(op: SyncOperation, record: SyncOperationLog) -> dict[str, Any]:
    return _result(
        op,
        record.status,
        version=record.applied_version,
        conflict_id=record.conflict_id,
        reason=record.reason,
        code=SyncError.code if record.status == "error" else None,
        duplicate=True,
    )


def serialize_server_change(row: EntityVersion) -> dict[str, object]:
    return {
        "entityType": row.entity_type,
        "entityId": row.entity_id,
        "operation": "DELETE" if row.deleted else "UPDATE",
        "version": row.current_version,
        "data": dict(row.data_json or {}),
        "deleted": bool(row.deleted),
        "timestamp": ms_to_iso(row.last_modified_at_ms),
        "lastModifiedBy": row.last_modified_by,
        "deviceId": row.last_modified_device,
    }


def serialize_pending_operation(record: SyncOperationLog) -> dict[str, object]:
    return {
        "operationId": record.operation_id,
        "entityType": record.entity_type,
        "entityId": record.entity_id,
        "kind": record.kind,
        "declaredVersion": record.declared_version,
        "checksum": record.checksum,
        "batchId": record.batch_id,
        "receivedAt": datetime_to_iso(record.received_at),
    }


async def _write(
    session: AsyncSession,
    *,
    org_id: str,
    op: SyncOperation,
    plan: ApplyPlan,
    batch_id: str,
) -> None:
    await entity_versions_repo.compare_and_swap(
        session,
        org_id=org_id,
        plan=plan,
        modified_at_ms=now_ms(),
        modified_by=op.user_id,
        device_id=op.device_id,
        batch_id=batch_id,
        operation_id=op.id,
    )


async def _finish(
    session: AsyncSession,
    *,
    op: SyncOperation,
    record_id: int,
    status: str,
    reason: str | None = None,
    applied_version: int | None = None,
    conflict_id: str | None = None,
) -> None:
    finished = await operation_log_repo.mark_processed(
        session,
        record_id=record_id,
        status=status,
        reason=reason,
        applied_version=applied_version,
        conflict_id=conflict_id,
    )
    if not finished:
        raise OperationAlreadyProcessedError(f"operation {op.id} already processed")


async def _apply_once(
    session: AsyncSession,
    *,
    org_id: str,
    op: SyncOperation,
    record_id: int,
    current: EntitySnapshot | None,
    batch_id: str,
) -> tuple[dict[str, Any], dict[str, object] | None]:
    """One detect-and-apply pass.

    Raises StaleVersionError if the CAS loses, and
    OperationAlreadyProcessedError if another request recorded the outcome
    first. Nothing is committed here.
    """
    try:
        validate(op, current)
    except SyncError as exc:
        await _finish(session, op=op, record_id=record_id, status="error", reason=exc.message)
        return _result(op, "error", reason=exc.message, code=exc.code), None

    classification = classify(op, current)

    if classification == CLEAN:
        _transition(batch_id, BatchState.CLEAN_APPLY)
        plan = plan_clean_apply(op, current)
        if plan is None:
            version = current.current_version if current is not None else 0
            await _finish(
                session,
                op=op,
                record_id=record_id,
                status="noop",
                reason="already deleted",
                applied_version=version,
            )
            return _result(op, "noop", version=version, reason="already deleted"), None

        await _write(session, org_id=org_id, op=op, plan=plan, batch_id=batch_id)
        await _finish(
            session, op=op, record_id=record_id, status="applied", applied_version=plan.new_version
        )
        return _result(op, "applied", version=plan.new_version), None

    _transition(batch_id, BatchState.CONFLICT_DETECTED)
    if current is None:
        raise PersistenceError(f"{op.entity_type}/{op.entity_id} conflict without a stored record")

    if classification != DELETE_CONFLICT:
        base = None
        if op.declared_version > 0:
            revision = await entity_versions_repo.get_revision(
                session,
                org_id=org_id,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                version=op.declared_version,
            )
            if revision is not None:
                base = dict(revision.data_json or {})

        merge = try_auto_merge(op, base, current, overlap_policy=settings.sync_overlap_policy)
        if merge is not None:
            plan = plan_write(
                current,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                data=merge.data,
                deleted=False,
            )
            await _write(session, org_id=org_id, op=op, plan=plan, batch_id=batch_id)
            reason = None
            if merge.discarded:
                reason = f"{merge.strategy} discarded fields: " + ",".join(
                    sorted(merge.discarded_client_fields | merge.discarded_server_fields)
                )
                logger.warning(
                    "sync batch=%s entity=%s/%s %s",
                    batch_id,
                    op.entity_type,
                    op.entity_id,
                    reason,
                )
            await _finish(
                session,
                op=op,
                record_id=record_id,
                status="merged",
                reason=reason,
                applied_version=plan.new_version,
            )
            out = _result(op, "merged", version=plan.new_version, reason=reason)
            out["mergeStrategy"] = merge.strategy
            out["discardedClientFields"] = sorted(merge.discarded_client_fields)
            out["discardedServerFields"] = sorted(merge.discarded_server_fields)
            return out, None

    conflict_type = "delete" if classification == DELETE_CONFLICT else "concurrent"
    row = conflicts_repo.add(
        session, org_id=org_id, operation=op, conflict_type=conflict_type, current=current
    )
    await _finish(
        session,
        op=op,
        record_id=record_id,
        status="conflict",
        reason=conflict_type,
        conflict_id=row.id,
    )
    logger.info(
        "sync conflict batch=%s device=%s entity=%s/%s type=%s declared=%s current=%s",
        batch_id,
        op.device_id,
        op.entity_type,
        op.entity_id,
        conflict_type,
        op.declared_version,
        current.current_version,
    )
    return (
        _result(op, "conflict", version=current.current_version, conflict_id=row.id),
        serialize_conflict(row),
    )


async def _already_processed(
    session: AsyncSession, *, org_id: str, op: SyncOperation, batch_id: str
) -> dict[str, Any]:
    # Drop this request's writes for the operation; the stored outcome stands.
    await session.rollback()
    stored = await operation_log_repo.get(
        session, org_id=org_id, device_id=op.device_id, operation_id=op.id
    )
    if stored is None:
        raise PersistenceError(f"operation {op.id} missing from the log")
    logger.info(
        "sync batch=%s op=%s already processed by another request status=%s",
        batch_id,
        op.id,
        stored.status,
    )
    return _stored_result(op, stored)


async def _process_operation(
    session: AsyncSession,
    *,
    org_id: str,
    op: SyncOperation,
    record_id: int,
    batch_id: str,
) -> tuple[dict[str, Any], dict[str, object] | None]:
    try:
        for attempt in range(settings.sync_cas_max_retries + 1):
            current = await entity_versions_repo.get_snapshot(
                session, org_id=org_id, entity_type=op.entity_type, entity_id=op.entity_id
            )
            try:
                outcome = await _apply_once(
                    session,
                    org_id=org_id,
                    op=op,
                    record_id=record_id,
                    current=current,
                    batch_id=batch_id,
                )
            except StaleVersionError as exc:
                # Nothing was written; run the operation through detection again.
                logger.info(
                    "sync batch=%s op=%s lost version race expected=%s attempt=%s",
                    batch_id,
                    op.id,
                    exc.expected_version,
                    attempt + 1,
                )
                continue
            await session.commit()
            return outcome

        reason = "version contention"
        await _finish(session, op=op, record_id=record_id, status="error", reason=reason)
        await session.commit()
        return _result(op, "error", reason=reason, code=StaleVersionError.code), None
    except OperationAlreadyProcessedError:
        return await _already_processed(session, org_id=org_id, op=op, batch_id=batch_id), None


async def synchronize(
    *,
    session: AsyncSession,
    user: User,
    device_id: str,
    operations: list[SyncOperation],
    last_sync_ms: int | None = None,
    sync_mode: str = "incremental",
) -> dict[str, Any]:
    """Process one offline batch and compute the server delta for the device.

    Per-operation problems end up in `errors` or `conflicts`; only batch
    malformation (ValidationError) and storage failures (PersistenceError)
    abort the call.
    """
    batch_id = uuid.uuid4().hex
    deadline = time.monotonic() + float(settings.sync_batch_timeout_seconds)
    org_id = user.org_id
    user_id = int(user.id or 0)
    device_id = (device_id or "").strip()

    _transition(batch_id, BatchState.RECEIVED)
    logger.info(
        "sync batch=%s received device=%s user=%s operations=%s mode=%s",
        batch_id,
        device_id,
        user_id,
        len(operations),
        sync_mode,
    )

    try:
        _transition(batch_id, BatchState.VALIDATING)
        if not device_id:
            raise ValidationError("deviceId is required")
        if len(operations) > settings.sync_max_operations_per_batch:
            raise ValidationError(
                "too many operations in one batch",
                details={
                    "operations": len(operations),
                    "max": settings.sync_max_operations_per_batch,
                },
            )
        if sync_mode not in {"full", "incremental"}:
            raise ValidationError(f"invalid sync mode: {sync_mode}")

        return await _run_batch(
            session,
            batch_id=batch_id,
            deadline=deadline,
            org_id=org_id,
            user_id=user_id,
            device_id=device_id,
            operations=operations,
            last_sync_ms=last_sync_ms,
            sync_mode=sync_mode,
        )
    except SQLAlchemyError as exc:
        await session.rollback()
        _transition(batch_id, BatchState.FAILED)
        logger.exception("sync batch=%s failed in storage device=%s", batch_id, device_id)
        raise PersistenceError("sync storage failure; retry the batch") from exc
    except SyncError as exc:
        _transition(batch_id, BatchState.FAILED)
        logger.warning("sync batch=%s rejected code=%s: %s", batch_id, exc.code, exc.message)
        raise


async def _run_batch(
    session: AsyncSession,
    *,
    batch_id: str,
    deadline: float,
    org_id: str,
    user_id: int,
    device_id: str,
    operations: list[SyncOperation],
    last_sync_ms: int | None,
    sync_mode: str,
) -> dict[str, Any]:
    results: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    conflicts: list[dict[str, object]] = []

    accepted: list[SyncOperation] = []
    seen: set[str] = set()
    for raw in operations:
        op = dataclasses.replace(
            raw,
            device_id=device_id,
            user_id=user_id,
            client_timestamp_ms=clamp_client_timestamp_ms(raw.client_timestamp_ms),
        )
        if op.id and op.id in seen:
            errors.append(_error(op, "duplicate", "duplicate operation id in batch"))
            continue
        seen.add(op.id)
        try:
            check_shape(op)
            verify_checksum(op)
        except SyncError as exc:
            # Not logged: the client resubmits the same id with a fresh payload.
            results.append(_result(op, "error", reason=exc.message, code=exc.code))
            errors.append(_error(op, exc.code, exc.message))
            continue
        accepted.append(op)

    # Durable receipt before any apply.
    logged: list[tuple[SyncOperation, int]] = []
    for op in accepted:
        record, created = await operation_log_repo.append(
            session, org_id=org_id, operation=op, batch_id=batch_id
        )
        if not created and record.checksum != op.checksum:
            reason = "operation id already used with a different payload"
            results.append(_result(op, "error", reason=reason, code=ValidationError.code))
            errors.append(_error(op, ValidationError.code, reason))
            continue
        if not created and record.status in operation_log_repo.TERMINAL_STATUSES:
            results.append(_stored_result(op, record))
            continue
        logged.append((op, int(record.id or 0)))
    await session.commit()

    groups: dict[tuple[str, str], list[tuple[SyncOperation, int]]] = {}
    for op, record_id in logged:
        groups.setdefault((op.entity_type, op.entity_id), []).append((op, record_id))

    processed = 0
    timed_out = False
    for items in groups.values():
        for op, record_id in items:
            if not timed_out and time.monotonic() > deadline:
                timed_out = True
                logger.warning("sync batch=%s timed out; remaining operations stay pending", batch_id)
            if timed_out:
                results.append(_result(op, "pending", reason="timeout", code="timeout"))
                errors.append(_error(op, "timeout", "timeout"))
                continue

            outcome, conflict = await _process_operation(
                session, org_id=org_id, op=op, record_id=record_id, batch_id=batch_id
            )
            results.append(outcome)
            if outcome["status"] in {"applied", "merged"} and not outcome["duplicate"]:
                processed += 1
            elif outcome["status"] == "error":
                code = str(outcome["code"] or SyncError.code)
                errors.append(_error(op, code, str(outcome["reason"])))
            if conflict is not None:
                conflicts.append(conflict)

    _transition(batch_id, BatchState.PERSISTED)

    server_now = now_ms()
    if sync_mode == "full":
        watermark = 0
    elif last_sync_ms is not None:
        watermark = max(0, int(last_sync_ms))
    else:
        watermark = server_now - settings.sync_default_lookback_hours * 3600 * 1000

    limit = max(1, int(settings.sync_delta_limit))
    rows = await entity_versions_repo.list_changed_since(
        session, org_id=org_id, since_ms=watermark, exclude_batch_id=batch_id, limit=limit + 1
    )
    has_more = len(rows) > limit
    server_changes = [serialize_server_change(r) for r in rows[:limit]]
    _transition(batch_id, BatchState.DELTA_COMPUTED)

    state = await sync_state_repo.record_sync(
        session,
        org_id=org_id,
        user_id=user_id,
        device_id=device_id,
        last_sync_at_ms=server_now,
        batch_id=batch_id,
        applied=processed,
        conflicts=len(conflicts),
        errors=len(errors),
    )
    await session.commit()

    _transition(batch_id, BatchState.RESPONDED)
    logger.info(
        "sync batch=%s done device=%s processed=%s conflicts=%s errors=%s changes=%s",
        batch_id,
        device_id,
        processed,
        len(conflicts),
        len(errors),
        len(server_changes),
    )
    return {
        "batchId": batch_id,
        "operationsProcessed": processed,
        "results": results,
        "conflicts": conflicts,
        "errors": errors,
        "serverChanges": server_changes,
        "hasMoreChanges": has_more,
        "syncState": {
            "deviceId": device_id,
            "lastSync": ms_to_iso(state.last_sync_at_ms),
            "lastBatchId": state.last_batch_id,
            "syncCount": state.sync_count,
            "operationsApplied": state.operations_applied,
            "conflictsDetected": state.conflicts_detected,
            "errors": state.errors,
        },
        "serverTimeMs": server_now,
    }


async def list_pending_operations(
    *, session: AsyncSession, user: User, device_id: str
) -> list[dict[str, object]]:
    rows = await operation_log_repo.list_pending(session, org_id=user.org_id, device_id=device_id)
    return [serialize_pending_operation(r) for r in rows]
