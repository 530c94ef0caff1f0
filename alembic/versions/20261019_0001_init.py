"""init sync tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _index(table: str, *columns: str) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column], unique=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("api_token", sa.String(length=255), nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_api_token", "users", ["api_token"], unique=True)
    _index("users", "org_id", "is_active", "created_at")

    op.create_table(
        "entity_versions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("data_json", sa.JSON(), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_modified_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("last_modified_by", sa.Integer(), nullable=True),
        sa.Column("last_modified_device", sa.String(length=128), nullable=True),
        sa.Column("last_batch_id", sa.String(length=64), nullable=True),
        sa.Column("last_operation_id", sa.String(length=128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "org_id", "entity_type", "entity_id", name="uq_entity_versions_org_type_entity"
        ),
    )
    _index(
        "entity_versions",
        "org_id",
        "entity_type",
        "entity_id",
        "deleted",
        "last_modified_at_ms",
        "last_batch_id",
        "updated_at",
    )

    op.create_table(
        "entity_revisions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("modified_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("modified_by", sa.Integer(), nullable=True),
        sa.Column("device_id", sa.String(length=128), nullable=True),
        sa.Column("operation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "org_id",
            "entity_type",
            "entity_id",
            "version",
            name="uq_entity_revisions_org_type_entity_version",
        ),
    )
    _index("entity_revisions", "org_id", "entity_type", "entity_id", "version")

    op.create_table(
        "sync_operations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("operation_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=10), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("client_timestamp_ms", sa.BigInteger(), nullable=True),
        sa.Column("declared_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("checksum", sa.String(length=128), nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("applied_version", sa.Integer(), nullable=True),
        sa.Column("conflict_id", sa.String(length=36), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "org_id", "device_id", "operation_id", name="uq_sync_operations_org_device_op"
        ),
    )
    _index(
        "sync_operations",
        "org_id",
        "entity_type",
        "entity_id",
        "user_id",
        "device_id",
        "batch_id",
        "received_at",
        "status",
    )

    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("conflict_type", sa.String(length=20), nullable=False),
        sa.Column("local_operation_json", sa.JSON(), nullable=True),
        sa.Column("remote_state_json", sa.JSON(), nullable=True),
        sa.Column("remote_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution", sa.String(length=20), nullable=True),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        sa.Column("resolved_version", sa.Integer(), nullable=True),
    )
    _index(
        "sync_conflicts",
        "org_id",
        "entity_type",
        "entity_id",
        "user_id",
        "device_id",
        "conflict_type",
        "detected_at",
        "resolved_at",
    )

    op.create_table(
        "device_sync_states",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("last_sync_at_ms", sa.BigInteger(), nullable=True),
        sa.Column("last_batch_id", sa.String(length=64), nullable=True),
        sa.Column("sync_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("operations_applied", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("conflicts_detected", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("org_id", "device_id", name="uq_device_sync_states_org_device"),
    )
    _index("device_sync_states", "org_id", "user_id", "device_id", "created_at", "updated_at")


def downgrade() -> None:
    op.drop_table("device_sync_states")
    op.drop_table("sync_conflicts")
    op.drop_table("sync_operations")
    op.drop_table("entity_revisions")
    op.drop_table("entity_versions")
    op.drop_table("users")
