from __future__ import annotations

from typing import cast

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.db import insert_ignoring_conflicts
from zetra_sync.errors import PersistenceError
from zetra_sync.models import DeviceSyncState, utc_now


async def get(session: AsyncSession, *, org_id: str, device_id: str) -> DeviceSyncState | None:
    stmt = (
        select(DeviceSyncState)
        .where(DeviceSyncState.org_id == org_id)
        .where(DeviceSyncState.device_id == device_id)
        .execution_options(populate_existing=True)
    )
    return (await session.exec(stmt)).first()


async def record_sync(
    session: AsyncSession,
    *,
    org_id: str,
    user_id: int,
    device_id: str,
    last_sync_at_ms: int,
    batch_id: str,
    applied: int,
    conflicts: int,
    errors: int,
) -> DeviceSyncState:
    """Advance the device watermark and bump its counters (upsert)."""
    table = SQLModel.metadata.tables["device_sync_states"]
    now = utc_now()

    await session.exec(  # pyright: ignore[reportCallIssue,reportArgumentType]
        insert_ignoring_conflicts(
            table,
            {
                "org_id": org_id,
                "user_id": user_id,
                "device_id": device_id,
                "last_sync_at_ms": 0,
                "sync_count": 0,
                "operations_applied": 0,
                "conflicts_detected": 0,
                "errors": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["org_id", "device_id"],
        )
    )
    await session.exec(  # pyright: ignore[reportCallIssue,reportArgumentType]
        sa.update(table)
        .where(table.c.org_id == org_id)
        .where(table.c.device_id == device_id)
        .values(
            user_id=user_id,
            last_sync_at_ms=int(last_sync_at_ms),
            last_batch_id=batch_id,
            sync_count=table.c.sync_count + 1,
            operations_applied=table.c.operations_applied + int(applied),
            conflicts_detected=table.c.conflicts_detected + int(conflicts),
            errors=table.c.errors + int(errors),
            updated_at=now,
        )
    )

    row = await get(session, org_id=org_id, device_id=device_id)
    if row is None:
        raise PersistenceError(f"sync state for device {device_id} missing after upsert")
    return row


async def list_for_user(
    session: AsyncSession, *, org_id: str, user_id: int
) -> list[DeviceSyncState]:
    stmt = (
        select(DeviceSyncState)
        .where(DeviceSyncState.org_id == org_id)
        .where(DeviceSyncState.user_id == user_id)
        .order_by(
            cast(ColumnElement[object], cast(object, DeviceSyncState.updated_at)).desc(),
        )
    )
    return list((await session.exec(stmt)).all())
