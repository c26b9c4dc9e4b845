"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "deployments",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("engine_type", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("tenant_isolation_mode", sa.String(), nullable=False),
        sa.Column("cpu", sa.Float(), nullable=False),
        sa.Column("memory_mb", sa.Integer(), nullable=False),
        sa.Column("storage_gb", sa.Integer(), nullable=False),
        sa.Column("replicas", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("tls_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("routing_strategy", sa.String(), nullable=False),
        sa.Column("endpoints", sa.JSON(), nullable=False),
        sa.Column("node_id", sa.String(), nullable=True),
        sa.Column("substrate_handles", sa.JSON(), nullable=False),
        sa.Column("config_digest", sa.String(), nullable=True),
        sa.Column("network_policy_json", sa.JSON(), nullable=True),
        sa.Column("access_policy_json", sa.JSON(), nullable=True),
        sa.Column("db_username", sa.String(), nullable=True),
        sa.Column("db_password_sealed", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failed_stage", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("destroyed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_deployments_user_id", "deployments", ["user_id"])
    op.create_index("ix_deployments_state", "deployments", ["state"])
    op.create_index("ix_deployments_user_state", "deployments", ["user_id", "state"])
    op.create_index("ix_deployments_state_expires", "deployments", ["state", "expires_at"])

    op.create_table(
        "deployment_transitions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "deployment_id",
            sa.String(),
            sa.ForeignKey("deployments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_state", sa.String(), nullable=False),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_deployment_transitions_deployment_id", "deployment_transitions", ["deployment_id"])

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "deployment_id",
            sa.String(),
            sa.ForeignKey("deployments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("isolation_key", sa.String(), nullable=False),
        sa.Column("quota", sa.Integer(), nullable=False),
        sa.Column("substrate_handle", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("deployment_id", "isolation_key", name="uq_tenants_deployment_isolation_key"),
    )
    op.create_index("ix_tenants_deployment_id", "tenants", ["deployment_id"])

    op.create_table(
        "backups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("checksum", sa.String(), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("parent_backup_id", sa.String(), nullable=True),
        sa.Column("schedule_slot", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retention_until", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        # One backup per logical schedule slot; manual backups leave the slot null.
        sa.UniqueConstraint("deployment_id", "schedule_slot", name="uq_backups_deployment_slot"),
    )
    op.create_index("ix_backups_deployment_id", "backups", ["deployment_id"])
    op.create_index("ix_backups_retention", "backups", ["retention_until"])

    op.create_table(
        "scaling_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("cpu_up", sa.Float(), nullable=True),
        sa.Column("cpu_down", sa.Float(), nullable=True),
        sa.Column("memory_up", sa.Float(), nullable=True),
        sa.Column("memory_down", sa.Float(), nullable=True),
        sa.Column("connections_up", sa.Float(), nullable=True),
        sa.Column("connections_down", sa.Float(), nullable=True),
        sa.Column("cooldown_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("min_replicas", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_replicas", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_scaled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_scaling_policies_deployment_id", "scaling_policies", ["deployment_id"], unique=True)

    op.create_table(
        "scaling_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("from_replicas", sa.Integer(), nullable=False),
        sa.Column("to_replicas", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_scaling_events_deployment_id", "scaling_events", ["deployment_id"])

    op.create_table(
        "backup_schedules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("cron", sa.String(), nullable=False),
        sa.Column("backup_type", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_slot_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_backup_schedules_deployment_id", "backup_schedules", ["deployment_id"])

    op.create_table(
        "scaling_windows",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("cron", sa.String(), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False),
        sa.Column("replicas", sa.Integer(), nullable=False),
        sa.Column("baseline_replicas", sa.Integer(), nullable=False),
        sa.Column("applied_slot_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reverted", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_scaling_windows_deployment_id", "scaling_windows", ["deployment_id"])

    op.create_table(
        "maintenance_windows",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("cron", sa.String(), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_maintenance_windows_deployment_id", "maintenance_windows", ["deployment_id"])


def downgrade() -> None:
    for table in (
        "maintenance_windows",
        "scaling_windows",
        "backup_schedules",
        "scaling_events",
        "scaling_policies",
        "backups",
        "tenants",
        "deployment_transitions",
        "deployments",
    ):
        op.drop_table(table)
