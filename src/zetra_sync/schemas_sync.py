from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from zetra_sync.domain.operations import EntityType, OperationKind
from zetra_sync.domain.resolution import ResolutionStrategy

SyncMode = Literal["full", "incremental"]


class SyncOperationIn(BaseModel):
    # Accepts both the documented names and the legacy client names
    # (operation/data/timestamp/version).
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=128)
    entity_type: EntityType = Field(validation_alias=AliasChoices("entityType", "entity_type"))
    entity_id: str = Field(
        min_length=1, max_length=128, validation_alias=AliasChoices("entityId", "entity_id")
    )
    kind: OperationKind = Field(validation_alias=AliasChoices("kind", "operation"))
    payload: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("payload", "data")
    )
    client_timestamp: datetime | None = Field(
        default=None, validation_alias=AliasChoices("clientTimestamp", "timestamp")
    )
    declared_version: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("declaredVersion", "version")
    )
    checksum: str = Field(min_length=1, max_length=128)


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(
        min_length=1, max_length=128, validation_alias=AliasChoices("deviceId", "device_id")
    )
    operations: list[SyncOperationIn] = Field(default_factory=list)
    last_sync: datetime | None = Field(
        default=None, validation_alias=AliasChoices("lastSync", "last_sync")
    )
    sync_mode: SyncMode = Field(
        default="incremental", validation_alias=AliasChoices("syncMode", "sync_mode")
    )
    compression_enabled: bool = Field(
        default=True, validation_alias=AliasChoices("compressionEnabled", "compression_enabled")
    )


class ConflictResolutionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conflict_id: str | None = Field(
        default=None, validation_alias=AliasChoices("conflictId", "conflict_id")
    )
    resolution: ResolutionStrategy
    custom_data: Any = Field(
        default=None, validation_alias=AliasChoices("customData", "custom_data")
    )


class ApiEnvelope(BaseModel):
    success: bool = True
    data: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] | None = None
