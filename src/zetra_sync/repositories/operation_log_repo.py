from __future__ import annotations

from typing import cast

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.db import insert_ignoring_conflicts
from zetra_sync.domain.operations import SyncOperation
from zetra_sync.errors import PersistenceError
from zetra_sync.models import SyncOperationLog, utc_now

TERMINAL_STATUSES: frozenset[str] = frozenset({"applied", "merged", "conflict", "noop", "error"})


def to_operation(record: SyncOperationLog) -> SyncOperation:
    return SyncOperation(
        id=record.operation_id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        kind=record.kind,
        payload=dict(record.payload_json or {}),
        client_timestamp_ms=int(record.client_timestamp_ms or 0),
        declared_version=int(record.declared_version),
        checksum=record.checksum,
        device_id=record.device_id,
        user_id=int(record.user_id),
    )


async def get(
    session: AsyncSession, *, org_id: str, device_id: str, operation_id: str
) -> SyncOperationLog | None:
    stmt = (
        select(SyncOperationLog)
        .where(SyncOperationLog.org_id == org_id)
        .where(SyncOperationLog.device_id == device_id)
        .where(SyncOperationLog.operation_id == operation_id)
        .execution_options(populate_existing=True)
    )
    return (await session.exec(stmt)).first()


async def append(
    session: AsyncSession, *, org_id: str, operation: SyncOperation, batch_id: str
) -> tuple[SyncOperationLog, bool]:
    """Idempotent append keyed by (org, device, client operation id).

    Returns the stored record and whether this call created it. A retried
    operation gets the original record back untouched.
    """
    table = SQLModel.metadata.tables["sync_operations"]
    values: dict[str, object] = {
        "org_id": org_id,
        "user_id": operation.user_id,
        "device_id": operation.device_id,
        "operation_id": operation.id,
        "entity_type": operation.entity_type,
        "entity_id": operation.entity_id,
        "kind": operation.kind,
        "payload_json": dict(operation.payload),
        "client_timestamp_ms": int(operation.client_timestamp_ms),
        "declared_version": int(operation.declared_version),
        "checksum": operation.checksum,
        "batch_id": batch_id,
        "received_at": utc_now(),
        "status": "pending",
    }
    stmt = insert_ignoring_conflicts(
        table, values, index_elements=["org_id", "device_id", "operation_id"]
    )
    result = await session.exec(stmt)  # pyright: ignore[reportCallIssue,reportArgumentType]
    created = bool(result.rowcount)  # pyright: ignore[reportAttributeAccessIssue]

    record = await get(
        session, org_id=org_id, device_id=operation.device_id, operation_id=operation.id
    )
    if record is None:
        raise PersistenceError(f"operation {operation.id} missing after append")
    return record, created


async def list_pending(
    session: AsyncSession, *, org_id: str, device_id: str, limit: int = 500
) -> list[SyncOperationLog]:
    stmt = (
        select(SyncOperationLog)
        .where(SyncOperationLog.org_id == org_id)
        .where(SyncOperationLog.device_id == device_id)
        .where(SyncOperationLog.status == "pending")
        .order_by(
            cast(ColumnElement[object], cast(object, SyncOperationLog.received_at)).asc(),
            cast(ColumnElement[object], cast(object, SyncOperationLog.id)).asc(),
        )
        .limit(limit)
    )
    return list((await session.exec(stmt)).all())


async def mark_processed(
    session: AsyncSession,
    *,
    record_id: int,
    status: str,
    reason: str | None = None,
    applied_version: int | None = None,
    conflict_id: str | None = None,
) -> bool:
    """Write the terminal processing metadata of a pending record.

    Conditional on the stored row still being pending, so the metadata is
    written once even when two requests process the same operation. Returns
    False when another request already finished it; the caller must roll back
    whatever it wrote for the operation in this transaction.
    """
    table = SQLModel.metadata.tables["sync_operations"]
    stmt = (
        sa.update(table)
        .where(table.c.id == record_id)
        .where(table.c.status == "pending")
        .values(
            status=status,
            reason=reason,
            applied_version=applied_version,
            conflict_id=conflict_id,
            processed_at=utc_now(),
        )
    )
    result = await session.exec(stmt)  # pyright: ignore[reportCallIssue,reportArgumentType]
    return result.rowcount == 1  # pyright: ignore[reportAttributeAccessIssue]


async def count_by_status(session: AsyncSession, *, org_id: str, user_id: int) -> dict[str, int]:
    table = SQLModel.metadata.tables["sync_operations"]
    stmt = (
        sa.select(table.c.status, sa.func.count())
        .where(table.c.org_id == org_id)
        .where(table.c.user_id == user_id)
        .group_by(table.c.status)
    )
    rows = (await session.exec(stmt)).all()  # pyright: ignore[reportCallIssue,reportArgumentType]
    return {str(status): int(count) for status, count in rows}
