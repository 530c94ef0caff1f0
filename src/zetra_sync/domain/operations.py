from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, cast

EntityType = Literal["task", "document", "client", "contact", "note"]
OperationKind = Literal["CREATE", "UPDATE", "DELETE"]

ENTITY_TYPES: frozenset[str] = frozenset({"task", "document", "client", "contact", "note"})
OPERATION_KINDS: frozenset[str] = frozenset({"CREATE", "UPDATE", "DELETE"})


@dataclass(frozen=True)
class SyncOperation:
    """One client-originated mutation, as received from a device."""

    id: str
    entity_type: str
    entity_id: str
    kind: str
    payload: dict[str, object]
    client_timestamp_ms: int
    declared_version: int
    checksum: str
    device_id: str
    user_id: int

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "kind": self.kind,
            "payload": dict(self.payload),
            "clientTimestampMs": self.client_timestamp_ms,
            "declaredVersion": self.declared_version,
            "checksum": self.checksum,
            "deviceId": self.device_id,
            "userId": self.user_id,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "SyncOperation":
        return cls(
            id=str(raw.get("id") or ""),
            entity_type=str(raw.get("entityType") or ""),
            entity_id=str(raw.get("entityId") or ""),
            kind=str(raw.get("kind") or ""),
            payload=cast(dict[str, object], dict(raw.get("payload") or {})),
            client_timestamp_ms=int(raw.get("clientTimestampMs") or 0),
            declared_version=int(raw.get("declaredVersion") or 0),
            checksum=str(raw.get("checksum") or ""),
            device_id=str(raw.get("deviceId") or ""),
            user_id=int(raw.get("userId") or 0),
        )


@dataclass(frozen=True)
class EntitySnapshot:
    """Authoritative server state of one entity (the EntityVersionRecord)."""

    entity_type: str
    entity_id: str
    current_version: int
    data: dict[str, object] = field(default_factory=dict)
    deleted: bool = False
    last_modified_at_ms: int = 0
    last_modified_by: int | None = None
    last_modified_device: str | None = None

    def to_json(self) -> dict[str, object]:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "version": self.current_version,
            "data": dict(self.data),
            "deleted": self.deleted,
            "lastModifiedAtMs": self.last_modified_at_ms,
            "lastModifiedBy": self.last_modified_by,
            "lastModifiedDevice": self.last_modified_device,
        }


def next_state(
    kind: str,
    payload: dict[str, object],
    current_data: dict[str, object],
    current_deleted: bool,
) -> tuple[dict[str, object], bool]:
    """Entity state after applying `kind` with `payload` on top of the current state.

    CREATE replaces, UPDATE patches (and revives a tombstone), DELETE keeps the
    last data but marks the entity deleted.
    """
    if kind == "DELETE":
        return dict(current_data), True
    if kind == "CREATE":
        return dict(payload), False
    merged = dict(current_data)
    merged.update(payload)
    return merged, False
