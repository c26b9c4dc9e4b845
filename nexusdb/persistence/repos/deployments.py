from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.domain.models import (
    BackupSchedule,
    DeploymentRecord,
    DeploymentTransition,
    MaintenanceWindow,
    ScalingEvent,
    ScalingPolicy,
    ScalingWindow,
    TenantRecord,
)
from nexusdb.domain.state import DeploymentState, TERMINAL_STATES


_LIVE_EXCLUDED = tuple(state.value for state in TERMINAL_STATES)


async def get_deployment(session: AsyncSession, deployment_id: str) -> DeploymentRecord | None:
    result = await session.execute(select(DeploymentRecord).where(DeploymentRecord.id == deployment_id))
    return result.scalar_one_or_none()


async def list_deployments(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    state: DeploymentState | str | None = None,
    states: Iterable[DeploymentState | str] | None = None,
) -> list[DeploymentRecord]:
    # Stable ordering keeps listing output deterministic.
    query = select(DeploymentRecord)
    if user_id is not None:
        query = query.where(DeploymentRecord.user_id == user_id)
    if state is not None:
        query = query.where(DeploymentRecord.state == DeploymentState(state).value)
    if states is not None:
        query = query.where(DeploymentRecord.state.in_([DeploymentState(s).value for s in states]))
    result = await session.execute(query.order_by(DeploymentRecord.created_at, DeploymentRecord.id))
    return list(result.scalars().all())


async def count_live(session: AsyncSession, *, user_id: str | None = None, exclude_id: str | None = None) -> int:
    # Live means anything that still holds or may hold substrate resources.
    query = select(func.count()).select_from(DeploymentRecord).where(DeploymentRecord.state.not_in(_LIVE_EXCLUDED))
    if user_id is not None:
        query = query.where(DeploymentRecord.user_id == user_id)
    if exclude_id is not None:
        query = query.where(DeploymentRecord.id != exclude_id)
    return int((await session.execute(query)).scalar_one())


async def sum_live_resources(
    session: AsyncSession,
    *,
    user_id: str,
    exclude_id: str | None = None,
) -> tuple[float, int]:
    # Aggregate cpu and memory across a user's live deployments, weighted by replicas.
    query = select(
        func.coalesce(func.sum(DeploymentRecord.cpu * DeploymentRecord.replicas), 0.0),
        func.coalesce(func.sum(DeploymentRecord.memory_mb * DeploymentRecord.replicas), 0),
    ).where(
        DeploymentRecord.user_id == user_id,
        DeploymentRecord.state.not_in(_LIVE_EXCLUDED),
    )
    if exclude_id is not None:
        query = query.where(DeploymentRecord.id != exclude_id)
    cpu_total, memory_total = (await session.execute(query)).one()
    return float(cpu_total or 0.0), int(memory_total or 0)


async def list_expired(session: AsyncSession, *, now: datetime) -> list[DeploymentRecord]:
    result = await session.execute(
        select(DeploymentRecord)
        .where(
            DeploymentRecord.state == DeploymentState.ACTIVE.value,
            DeploymentRecord.expires_at.is_not(None),
            DeploymentRecord.expires_at <= now,
        )
        .order_by(DeploymentRecord.expires_at, DeploymentRecord.id)
    )
    return list(result.scalars().all())


async def list_transitions(session: AsyncSession, deployment_id: str) -> list[DeploymentTransition]:
    result = await session.execute(
        select(DeploymentTransition)
        .where(DeploymentTransition.deployment_id == deployment_id)
        .order_by(DeploymentTransition.id)
    )
    return list(result.scalars().all())


async def purge_deployment(session: AsyncSession, deployment_id: str) -> None:
    # Remove children explicitly so purging does not rely on database cascade support.
    # Backup records are kept; they follow their own retention.
    for model in (
        DeploymentTransition,
        TenantRecord,
        ScalingPolicy,
        ScalingEvent,
        BackupSchedule,
        ScalingWindow,
        MaintenanceWindow,
    ):
        await session.execute(delete(model).where(model.deployment_id == deployment_id))
    await session.execute(delete(DeploymentRecord).where(DeploymentRecord.id == deployment_id))
