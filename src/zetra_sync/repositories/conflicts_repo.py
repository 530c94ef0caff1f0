from __future__ import annotations

import uuid
from typing import cast

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.domain.operations import EntitySnapshot, SyncOperation
from zetra_sync.models import SyncConflict, utc_now


def add(
    session: AsyncSession,
    *,
    org_id: str,
    operation: SyncOperation,
    conflict_type: str,
    current: EntitySnapshot | None,
) -> SyncConflict:
    row = SyncConflict(
        id=str(uuid.uuid4()),
        org_id=org_id,
        user_id=operation.user_id,
        device_id=operation.device_id,
        entity_type=operation.entity_type,
        entity_id=operation.entity_id,
        conflict_type=conflict_type,
        local_operation_json=operation.to_json(),
        remote_state_json=current.to_json() if current is not None else {},
        remote_version=current.current_version if current is not None else 0,
        detected_at=utc_now(),
    )
    session.add(row)
    return row


async def get(session: AsyncSession, *, org_id: str, conflict_id: str) -> SyncConflict | None:
    stmt = (
        select(SyncConflict)
        .where(SyncConflict.org_id == org_id)
        .where(SyncConflict.id == conflict_id)
        .execution_options(populate_existing=True)
    )
    return (await session.exec(stmt)).first()


async def list_pending(
    session: AsyncSession, *, org_id: str, user_id: int, limit: int = 500
) -> list[SyncConflict]:
    stmt = (
        select(SyncConflict)
        .where(SyncConflict.org_id == org_id)
        .where(SyncConflict.user_id == user_id)
        .where(cast(ColumnElement[object], cast(object, SyncConflict.resolved_at)).is_(None))
        .order_by(
            cast(ColumnElement[object], cast(object, SyncConflict.detected_at)).asc(),
            cast(ColumnElement[object], cast(object, SyncConflict.id)).asc(),
        )
        .limit(limit)
    )
    return list((await session.exec(stmt)).all())


async def mark_resolved(
    session: AsyncSession,
    *,
    org_id: str,
    conflict_id: str,
    resolution: str,
    resolved_by: int,
    resolved_version: int,
) -> bool:
    """Close the conflict unless someone else already did; returns whether this call won."""
    table = SQLModel.metadata.tables["sync_conflicts"]
    stmt = (
        sa.update(table)
        .where(table.c.org_id == org_id)
        .where(table.c.id == conflict_id)
        .where(table.c.resolved_at.is_(None))
        .values(
            resolved_at=utc_now(),
            resolution=resolution,
            resolved_by=resolved_by,
            resolved_version=resolved_version,
        )
    )
    result = await session.exec(stmt)  # pyright: ignore[reportCallIssue,reportArgumentType]
    return result.rowcount == 1  # pyright: ignore[reportAttributeAccessIssue]


async def count_for_user(session: AsyncSession, *, org_id: str, user_id: int) -> tuple[int, int]:
    """(pending, resolved) conflict counts."""
    table = SQLModel.metadata.tables["sync_conflicts"]
    stmt = (
        sa.select(
            sa.func.sum(sa.case((table.c.resolved_at.is_(None), 1), else_=0)),
            sa.func.sum(sa.case((table.c.resolved_at.is_not(None), 1), else_=0)),
        )
        .where(table.c.org_id == org_id)
        .where(table.c.user_id == user_id)
    )
    row = (await session.exec(stmt)).first()  # pyright: ignore[reportCallIssue,reportArgumentType]
    if row is None:
        return 0, 0
    return int(row[0] or 0), int(row[1] or 0)
