from __future__ import annotations

from typing import Literal

from zetra_sync.domain.operations import EntitySnapshot, SyncOperation, next_state
from zetra_sync.domain.planner import ApplyPlan, plan_write
from zetra_sync.errors import ValidationError

ResolutionStrategy = Literal["local", "remote", "custom"]


def resolve(
    local_operation: SyncOperation,
    current: EntitySnapshot | None,
    strategy: str,
    custom_data: object = None,
) -> ApplyPlan:
    """Plan the write that closes a conflict.

    Every strategy bumps the version by exactly one, including "remote": the
    other side of the conflict must observe that a resolution happened.
    """
    current_data = current.data if current is not None else {}
    current_deleted = current.deleted if current is not None else False

    if strategy == "local":
        data, deleted = next_state(
            local_operation.kind, local_operation.payload, current_data, current_deleted
        )
    elif strategy == "remote":
        data, deleted = dict(current_data), current_deleted
    elif strategy == "custom":
        if not isinstance(custom_data, dict):
            raise ValidationError("customData must be a JSON object for custom resolution")
        data, deleted = dict(custom_data), False
    else:
        raise ValidationError(f"invalid resolution strategy: {strategy}")

    return plan_write(
        current,
        entity_type=local_operation.entity_type,
        entity_id=local_operation.entity_id,
        data=data,
        deleted=deleted,
    )
