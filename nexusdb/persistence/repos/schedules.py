from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.domain.models import BackupSchedule, MaintenanceWindow, ScalingWindow


async def list_backup_schedules(session: AsyncSession, *, enabled_only: bool = True) -> list[BackupSchedule]:
    query = select(BackupSchedule)
    if enabled_only:
        query = query.where(BackupSchedule.enabled.is_(True))
    result = await session.execute(query.order_by(BackupSchedule.created_at, BackupSchedule.id))
    return list(result.scalars().all())


async def get_backup_schedule(session: AsyncSession, schedule_id: str) -> BackupSchedule | None:
    result = await session.execute(select(BackupSchedule).where(BackupSchedule.id == schedule_id))
    return result.scalar_one_or_none()


async def list_schedules_for_deployment(session: AsyncSession, deployment_id: str) -> list[BackupSchedule]:
    result = await session.execute(
        select(BackupSchedule)
        .where(BackupSchedule.deployment_id == deployment_id)
        .order_by(BackupSchedule.created_at, BackupSchedule.id)
    )
    return list(result.scalars().all())


async def list_scaling_windows(session: AsyncSession, *, enabled_only: bool = True) -> list[ScalingWindow]:
    query = select(ScalingWindow)
    if enabled_only:
        query = query.where(ScalingWindow.enabled.is_(True))
    result = await session.execute(query.order_by(ScalingWindow.created_at, ScalingWindow.id))
    return list(result.scalars().all())


async def get_scaling_window(session: AsyncSession, window_id: str) -> ScalingWindow | None:
    result = await session.execute(select(ScalingWindow).where(ScalingWindow.id == window_id))
    return result.scalar_one_or_none()


async def list_maintenance_windows(session: AsyncSession, deployment_id: str) -> list[MaintenanceWindow]:
    result = await session.execute(
        select(MaintenanceWindow)
        .where(MaintenanceWindow.deployment_id == deployment_id)
        .order_by(MaintenanceWindow.created_at, MaintenanceWindow.id)
    )
    return list(result.scalars().all())
