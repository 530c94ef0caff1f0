from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Union

from zetra_sync.domain.operations import ENTITY_TYPES, OPERATION_KINDS, EntitySnapshot, SyncOperation
from zetra_sync.errors import ChecksumMismatchError, ValidationError


@dataclass(frozen=True)
class Valid:
    current_version: int


@dataclass(frozen=True)
class Stale:
    current_version: int


VersionCheck = Union[Valid, Stale]


def canonical_json(payload: object) -> bytes:
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


def compute_checksum(payload: object) -> str:
    """SHA-256 hex digest of the canonical JSON form of `payload`."""
    return hashlib.sha256(canonical_json(payload)).hexdigest()


def verify_checksum(operation: SyncOperation) -> None:
    actual = compute_checksum(operation.payload)
    declared = (operation.checksum or "").strip().lower()
    if declared != actual:
        raise ChecksumMismatchError(
            f"checksum mismatch for operation {operation.id}",
            expected=declared,
            actual=actual,
        )


def check_shape(operation: SyncOperation) -> None:
    if not operation.id:
        raise ValidationError("missing operation id")
    if operation.entity_type not in ENTITY_TYPES:
        raise ValidationError(f"invalid entity type: {operation.entity_type}")
    if operation.kind not in OPERATION_KINDS:
        raise ValidationError(f"invalid operation kind: {operation.kind}")
    if not operation.entity_id:
        raise ValidationError("missing entity id")
    if operation.declared_version < 0:
        raise ValidationError("declared version must not be negative")


def validate(operation: SyncOperation, current: EntitySnapshot | None) -> VersionCheck:
    """Integrity and version check of one operation against the server record.

    Pure: no I/O. Raises ChecksumMismatchError for corrupted payloads and
    ValidationError when the client claims a version the server never issued.
    """
    check_shape(operation)
    verify_checksum(operation)

    current_version = current.current_version if current is not None else 0
    if operation.declared_version > current_version:
        raise ValidationError(
            "declared version is ahead of the server",
            details={
                "declared_version": operation.declared_version,
                "current_version": current_version,
            },
        )
    if operation.declared_version == current_version:
        return Valid(current_version=current_version)
    return Stale(current_version=current_version)
