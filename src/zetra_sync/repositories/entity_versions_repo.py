from __future__ import annotations

from typing import cast

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.db import insert_ignoring_conflicts
from zetra_sync.domain.operations import EntitySnapshot
from zetra_sync.domain.planner import ApplyPlan
from zetra_sync.errors import StaleVersionError
from zetra_sync.models import EntityRevision, EntityVersion, utc_now


def to_snapshot(row: EntityVersion) -> EntitySnapshot:
    return EntitySnapshot(
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        current_version=int(row.current_version),
        data=dict(row.data_json or {}),
        deleted=bool(row.deleted),
        last_modified_at_ms=int(row.last_modified_at_ms or 0),
        last_modified_by=row.last_modified_by,
        last_modified_device=row.last_modified_device,
    )


async def get(
    session: AsyncSession, *, org_id: str, entity_type: str, entity_id: str
) -> EntityVersion | None:
    # Always re-read: compare-and-swap writes bypass the identity map.
    stmt = (
        select(EntityVersion)
        .where(EntityVersion.org_id == org_id)
        .where(EntityVersion.entity_type == entity_type)
        .where(EntityVersion.entity_id == entity_id)
        .execution_options(populate_existing=True)
    )
    return (await session.exec(stmt)).first()


async def get_snapshot(
    session: AsyncSession, *, org_id: str, entity_type: str, entity_id: str
) -> EntitySnapshot | None:
    row = await get(session, org_id=org_id, entity_type=entity_type, entity_id=entity_id)
    return None if row is None else to_snapshot(row)


async def get_revision(
    session: AsyncSession, *, org_id: str, entity_type: str, entity_id: str, version: int
) -> EntityRevision | None:
    stmt = (
        select(EntityRevision)
        .where(EntityRevision.org_id == org_id)
        .where(EntityRevision.entity_type == entity_type)
        .where(EntityRevision.entity_id == entity_id)
        .where(EntityRevision.version == version)
    )
    return (await session.exec(stmt)).first()


async def compare_and_swap(
    session: AsyncSession,
    *,
    org_id: str,
    plan: ApplyPlan,
    modified_at_ms: int,
    modified_by: int,
    device_id: str,
    batch_id: str | None,
    operation_id: str | None,
) -> None:
    """Move the entity from plan.expected_version to plan.new_version.

    Raises StaleVersionError when another writer got there first; nothing has
    been written in that case.
    """
    table = SQLModel.metadata.tables["entity_versions"]
    now = utc_now()
    values: dict[str, object] = {
        "current_version": plan.new_version,
        "data_json": dict(plan.data),
        "deleted": plan.deleted,
        "last_modified_at_ms": int(modified_at_ms),
        "last_modified_by": modified_by,
        "last_modified_device": device_id,
        "last_batch_id": batch_id,
        "last_operation_id": operation_id,
        "updated_at": now,
    }

    if plan.expected_version == 0:
        stmt = insert_ignoring_conflicts(
            table,
            {
                "org_id": org_id,
                "entity_type": plan.entity_type,
                "entity_id": plan.entity_id,
                **values,
            },
            index_elements=["org_id", "entity_type", "entity_id"],
        )
    else:
        stmt = (
            sa.update(table)
            .where(table.c.org_id == org_id)
            .where(table.c.entity_type == plan.entity_type)
            .where(table.c.entity_id == plan.entity_id)
            .where(table.c.current_version == plan.expected_version)
            .values(**values)
        )

    result = await session.exec(stmt)  # pyright: ignore[reportCallIssue,reportArgumentType]
    if result.rowcount != 1:  # pyright: ignore[reportAttributeAccessIssue]
        raise StaleVersionError(
            f"{plan.entity_type}/{plan.entity_id} moved past version {plan.expected_version}",
            expected_version=plan.expected_version,
        )

    session.add(
        EntityRevision(
            org_id=org_id,
            entity_type=plan.entity_type,
            entity_id=plan.entity_id,
            version=plan.new_version,
            data_json=dict(plan.data),
            deleted=plan.deleted,
            modified_at_ms=int(modified_at_ms),
            modified_by=modified_by,
            device_id=device_id,
            operation_id=operation_id,
            created_at=now,
        )
    )


async def list_changed_since(
    session: AsyncSession,
    *,
    org_id: str,
    since_ms: int,
    exclude_batch_id: str | None,
    limit: int,
) -> list[EntityVersion]:
    last_modified = cast(ColumnElement[int], cast(object, EntityVersion.last_modified_at_ms))
    last_batch = cast(ColumnElement[object], cast(object, EntityVersion.last_batch_id))

    stmt = (
        select(EntityVersion)
        .where(EntityVersion.org_id == org_id)
        .where(last_modified >= int(since_ms))
        .execution_options(populate_existing=True)
    )
    if exclude_batch_id:
        stmt = stmt.where(sa.or_(last_batch.is_(None), last_batch != exclude_batch_id))
    stmt = stmt.order_by(
        last_modified.asc(),
        cast(ColumnElement[object], cast(object, EntityVersion.id)).asc(),
    ).limit(limit)
    return list((await session.exec(stmt)).all())
