from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.domain.models import ScalingEvent, ScalingPolicy


async def get_policy(session: AsyncSession, deployment_id: str) -> ScalingPolicy | None:
    result = await session.execute(select(ScalingPolicy).where(ScalingPolicy.deployment_id == deployment_id))
    return result.scalar_one_or_none()


async def list_policies(session: AsyncSession) -> list[ScalingPolicy]:
    result = await session.execute(select(ScalingPolicy).order_by(ScalingPolicy.deployment_id))
    return list(result.scalars().all())


async def list_events(session: AsyncSession, deployment_id: str, *, limit: int = 50) -> list[ScalingEvent]:
    # Newest first, bounded for history views.
    result = await session.execute(
        select(ScalingEvent)
        .where(ScalingEvent.deployment_id == deployment_id)
        .order_by(ScalingEvent.created_at.desc(), ScalingEvent.id)
        .limit(max(1, min(limit, 500)))
    )
    return list(result.scalars().all())
