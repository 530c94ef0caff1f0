from __future__ import annotations

from collections.abc import Mapping
from typing import Final, Literal

from zetra_sync.domain.operations import EntitySnapshot, SyncOperation

Classification = Literal["CLEAN", "CONCURRENT_CONFLICT", "DELETE_CONFLICT"]

CLEAN: Final = "CLEAN"
CONCURRENT_CONFLICT: Final = "CONCURRENT_CONFLICT"
DELETE_CONFLICT: Final = "DELETE_CONFLICT"

_MISSING = object()


def classify(operation: SyncOperation, current: EntitySnapshot | None) -> Classification:
    """Pure conflict classifier.

    - Unknown entity, or no interleaving write: CLEAN.
    - A tombstone receiving a CREATE/UPDATE from a client that has not seen
      the delete, or a stale DELETE against a live entity: DELETE_CONFLICT
      (never auto-resolved).
    - CREATE/UPDATE declaring the tombstone's own version: CLEAN; the client
      saw the delete and revives the entity.
    - Stale non-delete against a live entity: CONCURRENT_CONFLICT.
    - DELETE against a tombstone is CLEAN; the planner turns it into a no-op.
    """
    if current is None:
        return CLEAN

    if operation.declared_version >= current.current_version:
        return CLEAN

    if current.deleted:
        return CLEAN if operation.kind == "DELETE" else DELETE_CONFLICT

    if operation.kind == "DELETE":
        return DELETE_CONFLICT
    return CONCURRENT_CONFLICT


def changed_fields(base: Mapping[str, object], target: Mapping[str, object]) -> set[str]:
    keys = set(base) | set(target)
    return {k for k in keys if base.get(k, _MISSING) != target.get(k, _MISSING)}


def client_changed_fields(operation: SyncOperation, base: Mapping[str, object]) -> set[str]:
    return {k for k, v in operation.payload.items() if base.get(k, _MISSING) != v}
