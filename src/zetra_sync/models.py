# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BigInteger, Column, Text, UniqueConstraint
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    __tablename__ = "users"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True, min_length=1, max_length=64)
    api_token: str = Field(index=True, unique=True, min_length=1, max_length=255)
    # 租户（事务所）：所有同步数据都按 org_id 隔离
    org_id: str = Field(index=True, min_length=1, max_length=64)

    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class TenantRow(SQLModel):
    org_id: str = Field(index=True, max_length=64)
    entity_type: str = Field(index=True, max_length=20)
    entity_id: str = Field(index=True, max_length=128)


class EntityVersion(TenantRow, table=True):
    __tablename__ = "entity_versions"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (
        UniqueConstraint(
            "org_id", "entity_type", "entity_id", name="uq_entity_versions_org_type_entity"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    # Only ever moved by compare-and-swap in entity_versions_repo.
    current_version: int = Field(default=0)
    data_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    deleted: bool = Field(default=False, index=True)

    last_modified_at_ms: int = Field(default=0, sa_column=Column(BigInteger, index=True))
    last_modified_by: Optional[int] = Field(default=None)
    last_modified_device: Optional[str] = Field(default=None, max_length=128)
    last_batch_id: Optional[str] = Field(default=None, max_length=64, index=True)
    last_operation_id: Optional[str] = Field(default=None, max_length=128)

    updated_at: datetime = Field(default_factory=utc_now, index=True)


class EntityRevision(TenantRow, table=True):
    __tablename__ = "entity_revisions"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (
        UniqueConstraint(
            "org_id",
            "entity_type",
            "entity_id",
            "version",
            name="uq_entity_revisions_org_type_entity_version",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = Field(index=True)

    # Snapshot of the entity as of `version`; merge base for concurrent updates.
    data_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    deleted: bool = Field(default=False)

    modified_at_ms: int = Field(default=0, sa_column=Column(BigInteger))
    modified_by: Optional[int] = Field(default=None)
    device_id: Optional[str] = Field(default=None, max_length=128)
    operation_id: Optional[str] = Field(default=None, max_length=128)

    created_at: datetime = Field(default_factory=utc_now)


class SyncOperationLog(TenantRow, table=True):
    __tablename__ = "sync_operations"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (
        UniqueConstraint(
            "org_id", "device_id", "operation_id", name="uq_sync_operations_org_device_op"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="users.id")
    device_id: str = Field(index=True, min_length=1, max_length=128)
    operation_id: str = Field(min_length=1, max_length=128)

    kind: str = Field(max_length=10)  # CREATE / UPDATE / DELETE
    payload_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    client_timestamp_ms: int = Field(default=0, sa_column=Column(BigInteger))
    declared_version: int = Field(default=0)
    checksum: str = Field(max_length=128)
    batch_id: str = Field(index=True, max_length=64)
    received_at: datetime = Field(default_factory=utc_now, index=True)

    # 处理结果：操作进入终态时只写一次（条件更新 status=pending），操作字段本身永不改写
    status: str = Field(default="pending", index=True, max_length=20)
    reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    applied_version: Optional[int] = Field(default=None)
    conflict_id: Optional[str] = Field(default=None, max_length=36)
    processed_at: Optional[datetime] = Field(default=None)


class SyncConflict(TenantRow, table=True):
    __tablename__ = "sync_conflicts"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=36)
    user_id: int = Field(index=True, foreign_key="users.id")
    device_id: str = Field(index=True, max_length=128)

    conflict_type: str = Field(index=True, max_length=20)  # concurrent / delete
    local_operation_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    # Server state at detection time: {data, deleted, version, last_modified_at_ms, ...}
    remote_state_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    remote_version: int = Field(default=0)

    detected_at: datetime = Field(default_factory=utc_now, index=True)
    resolved_at: Optional[datetime] = Field(default=None, index=True)
    resolution: Optional[str] = Field(default=None, max_length=20)
    resolved_by: Optional[int] = Field(default=None)
    resolved_version: Optional[int] = Field(default=None)


class DeviceSyncState(SQLModel, table=True):
    __tablename__ = "device_sync_states"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (
        UniqueConstraint("org_id", "device_id", name="uq_device_sync_states_org_device"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    org_id: str = Field(index=True, max_length=64)
    user_id: int = Field(index=True, foreign_key="users.id")
    device_id: str = Field(index=True, min_length=1, max_length=128)

    last_sync_at_ms: int = Field(default=0, sa_column=Column(BigInteger))
    last_batch_id: Optional[str] = Field(default=None, max_length=64)
    sync_count: int = Field(default=0)
    operations_applied: int = Field(default=0)
    conflicts_detected: int = Field(default=0)
    errors: int = Field(default=0)

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now, index=True)
