from __future__ import annotations

from dataclasses import dataclass

from zetra_sync.domain.operations import EntitySnapshot, SyncOperation, next_state


@dataclass(frozen=True)
class ApplyPlan:
    """A compare-and-swap write: move the entity from expected_version to new_version."""

    entity_type: str
    entity_id: str
    expected_version: int
    new_version: int
    data: dict[str, object]
    deleted: bool


def plan_write(
    current: EntitySnapshot | None,
    *,
    entity_type: str,
    entity_id: str,
    data: dict[str, object],
    deleted: bool,
) -> ApplyPlan:
    expected = current.current_version if current is not None else 0
    return ApplyPlan(
        entity_type=entity_type,
        entity_id=entity_id,
        expected_version=expected,
        new_version=expected + 1,
        data=dict(data),
        deleted=deleted,
    )


def plan_clean_apply(operation: SyncOperation, current: EntitySnapshot | None) -> ApplyPlan | None:
    """Plan for an operation classified CLEAN; None means nothing to write."""
    if operation.kind == "DELETE" and current is not None and current.deleted:
        # Idempotent delete.
        return None

    current_data = current.data if current is not None else {}
    current_deleted = current.deleted if current is not None else False
    data, deleted = next_state(operation.kind, operation.payload, current_data, current_deleted)
    return plan_write(
        current,
        entity_type=operation.entity_type,
        entity_id=operation.entity_id,
        data=data,
        deleted=deleted,
    )
