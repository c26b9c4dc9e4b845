from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from nexusdb.core.clock import utc_now


def new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class DeploymentRecord(Base):
    __tablename__ = "deployments"
    __table_args__ = (
        Index("ix_deployments_user_state", "user_id", "state"),
        Index("ix_deployments_state_expires", "state", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    engine_type: Mapped[str] = mapped_column(String)
    environment: Mapped[str] = mapped_column(String)
    state: Mapped[str] = mapped_column(String, index=True)
    tenant_isolation_mode: Mapped[str] = mapped_column(String)
    # Resource spec kept as discrete columns so quota sums stay in SQL.
    cpu: Mapped[float] = mapped_column(Float)
    memory_mb: Mapped[int] = mapped_column(Integer)
    storage_gb: Mapped[int] = mapped_column(Integer)
    replicas: Mapped[int] = mapped_column(Integer, default=1)
    tls_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    routing_strategy: Mapped[str] = mapped_column(String)
    # Ordered endpoint list; non-empty only while active or scaling.
    endpoints: Mapped[list[str]] = mapped_column(JSON, default=list)
    node_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Opaque substrate handles, one per replica, in replica order.
    substrate_handles: Mapped[list[str]] = mapped_column(JSON, default=list)
    config_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    network_policy_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    access_policy_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    db_username: Mapped[str | None] = mapped_column(String, nullable=True)
    # Store only the sealed secret, never plaintext credentials.
    db_password_sealed: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_stage: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    destroyed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class DeploymentTransition(Base):
    __tablename__ = "deployment_transitions"

    # Append-only log of observed state changes for auditing the lifecycle.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(String, ForeignKey("deployments.id", ondelete="CASCADE"), index=True)
    from_state: Mapped[str] = mapped_column(String)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TenantRecord(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        UniqueConstraint("deployment_id", "isolation_key", name="uq_tenants_deployment_isolation_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Back-reference only; tenants never own the deployment.
    deployment_id: Mapped[str] = mapped_column(String, ForeignKey("deployments.id", ondelete="CASCADE"), index=True)
    isolation_key: Mapped[str] = mapped_column(String)
    quota: Mapped[int] = mapped_column(Integer)
    # Set only for dedicated-instance tenants.
    substrate_handle: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class BackupRecord(Base):
    __tablename__ = "backups"
    __table_args__ = (
        # One backup per logical schedule slot; manual backups leave the slot null.
        UniqueConstraint("deployment_id", "schedule_slot", name="uq_backups_deployment_slot"),
        Index("ix_backups_retention", "retention_until"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String, nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    parent_backup_id: Mapped[str | None] = mapped_column(String, nullable=True)
    schedule_slot: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retention_until: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class ScalingPolicy(Base):
    __tablename__ = "scaling_policies"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Percent utilization thresholds; connections are absolute counts per replica.
    cpu_up: Mapped[float | None] = mapped_column(Float, nullable=True)
    cpu_down: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_up: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_down: Mapped[float | None] = mapped_column(Float, nullable=True)
    connections_up: Mapped[float | None] = mapped_column(Float, nullable=True)
    connections_down: Mapped[float | None] = mapped_column(Float, nullable=True)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, default=300)
    min_replicas: Mapped[int] = mapped_column(Integer, default=1)
    max_replicas: Mapped[int] = mapped_column(Integer, default=1)
    last_scaled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class ScalingEvent(Base):
    __tablename__ = "scaling_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String, index=True)
    trigger: Mapped[str] = mapped_column(String)
    from_replicas: Mapped[int] = mapped_column(Integer)
    to_replicas: Mapped[int] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BackupSchedule(Base):
    __tablename__ = "backup_schedules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String, index=True)
    cron: Mapped[str] = mapped_column(String)
    backup_type: Mapped[str] = mapped_column(String)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Last slot that was fired or discarded; recurrence resumes after it.
    last_slot_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class ScalingWindow(Base):
    __tablename__ = "scaling_windows"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String, index=True)
    cron: Mapped[str] = mapped_column(String)
    duration_seconds: Mapped[int] = mapped_column(Integer)
    replicas: Mapped[int] = mapped_column(Integer)
    # Replica count restored once the window closes.
    baseline_replicas: Mapped[int] = mapped_column(Integer)
    applied_slot_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reverted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class MaintenanceWindow(Base):
    __tablename__ = "maintenance_windows"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String, index=True)
    cron: Mapped[str] = mapped_column(String)
    duration_seconds: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
