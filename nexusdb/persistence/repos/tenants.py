from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.domain.models import TenantRecord


async def get_tenant(session: AsyncSession, tenant_id: str) -> TenantRecord | None:
    result = await session.execute(select(TenantRecord).where(TenantRecord.id == tenant_id))
    return result.scalar_one_or_none()


async def get_by_isolation_key(session: AsyncSession, deployment_id: str, isolation_key: str) -> TenantRecord | None:
    result = await session.execute(
        select(TenantRecord).where(
            TenantRecord.deployment_id == deployment_id,
            TenantRecord.isolation_key == isolation_key,
        )
    )
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession, deployment_id: str) -> list[TenantRecord]:
    result = await session.execute(
        select(TenantRecord)
        .where(TenantRecord.deployment_id == deployment_id)
        .order_by(TenantRecord.created_at, TenantRecord.id)
    )
    return list(result.scalars().all())


async def count_tenants(session: AsyncSession, deployment_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(TenantRecord).where(TenantRecord.deployment_id == deployment_id)
    )
    return int(result.scalar_one())
