from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.domain.models import BackupRecord
from nexusdb.domain.state import BackupStatus, BackupType


async def get_backup(session: AsyncSession, backup_id: str) -> BackupRecord | None:
    result = await session.execute(select(BackupRecord).where(BackupRecord.id == backup_id))
    return result.scalar_one_or_none()


async def get_by_slot(session: AsyncSession, deployment_id: str, schedule_slot: str) -> BackupRecord | None:
    result = await session.execute(
        select(BackupRecord).where(
            BackupRecord.deployment_id == deployment_id,
            BackupRecord.schedule_slot == schedule_slot,
        )
    )
    return result.scalar_one_or_none()


async def list_backups(session: AsyncSession, deployment_id: str) -> list[BackupRecord]:
    result = await session.execute(
        select(BackupRecord)
        .where(BackupRecord.deployment_id == deployment_id)
        .order_by(BackupRecord.created_at, BackupRecord.id)
    )
    return list(result.scalars().all())


async def latest_complete(
    session: AsyncSession,
    deployment_id: str,
    *,
    backup_type: BackupType | None = None,
) -> BackupRecord | None:
    # Base lookup for incremental (any type) and differential (full only) backups.
    query = select(BackupRecord).where(
        BackupRecord.deployment_id == deployment_id,
        BackupRecord.status == BackupStatus.COMPLETE.value,
    )
    if backup_type is not None:
        query = query.where(BackupRecord.type == backup_type.value)
    result = await session.execute(
        query.order_by(BackupRecord.completed_at.desc(), BackupRecord.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def list_expired(session: AsyncSession, *, now: datetime) -> list[BackupRecord]:
    # Only records whose retention has elapsed are ever eligible for purge.
    result = await session.execute(
        select(BackupRecord)
        .where(
            BackupRecord.retention_until <= now,
            BackupRecord.status.in_([BackupStatus.COMPLETE.value, BackupStatus.FAILED.value]),
        )
        .order_by(BackupRecord.retention_until, BackupRecord.id)
    )
    return list(result.scalars().all())
