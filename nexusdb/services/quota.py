from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.core.config import Settings
from nexusdb.core.errors import QuotaExceededError, ValidationError
from nexusdb.domain.requests import ResourceSpec
from nexusdb.persistence.repos import deployments as deployments_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaUsage:
    # Usage a request would be measured against; exposed for diagnostics.
    user_deployments: int
    global_deployments: int
    user_cpu: float
    user_memory_mb: int


class QuotaService:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def check_spec(self, spec: ResourceSpec) -> None:
        # Per-deployment ceilings; cheap and session-free so Scale can reuse them.
        settings = self._settings
        if spec.cpu > settings.quota_max_cpu_per_deployment:
            raise QuotaExceededError(
                f"cpu {spec.cpu} exceeds per-deployment limit {settings.quota_max_cpu_per_deployment}"
            )
        if spec.memory_mb > settings.quota_max_memory_mb_per_deployment:
            raise QuotaExceededError(
                f"memory {spec.memory_mb}MB exceeds per-deployment limit {settings.quota_max_memory_mb_per_deployment}MB"
            )
        if spec.storage_gb > settings.quota_max_storage_gb_per_deployment:
            raise QuotaExceededError(
                f"storage {spec.storage_gb}GB exceeds per-deployment limit {settings.quota_max_storage_gb_per_deployment}GB"
            )
        if spec.replicas > settings.quota_max_replicas:
            raise QuotaExceededError(f"replicas {spec.replicas} exceeds limit {settings.quota_max_replicas}")

    async def usage(self, session: AsyncSession, *, user_id: str, exclude_id: str | None = None) -> QuotaUsage:
        user_cpu, user_memory = await deployments_repo.sum_live_resources(
            session, user_id=user_id, exclude_id=exclude_id
        )
        return QuotaUsage(
            user_deployments=await deployments_repo.count_live(session, user_id=user_id, exclude_id=exclude_id),
            global_deployments=await deployments_repo.count_live(session, exclude_id=exclude_id),
            user_cpu=user_cpu,
            user_memory_mb=user_memory,
        )

    async def check(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        spec: ResourceSpec,
        exclude_id: str | None = None,
    ) -> QuotaUsage:
        # exclude_id lets the pipeline re-validate a record that already counts against the quota.
        self.check_spec(spec)
        settings = self._settings
        usage = await self.usage(session, user_id=user_id, exclude_id=exclude_id)
        if usage.user_deployments + 1 > settings.quota_max_deployments_per_user:
            raise QuotaExceededError(
                f"user {user_id} already has {usage.user_deployments} deployments "
                f"(limit {settings.quota_max_deployments_per_user})"
            )
        if usage.global_deployments + 1 > settings.quota_max_deployments_global:
            raise QuotaExceededError(f"global deployment limit {settings.quota_max_deployments_global} reached")
        self._check_totals(user_id, usage, cpu=spec.cpu * spec.replicas, memory_mb=spec.memory_mb * spec.replicas)
        return usage

    async def check_scale(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        deployment_id: str,
        spec: ResourceSpec,
    ) -> None:
        # Scaling only changes replica count; deployment counts are unaffected.
        self.check_spec(spec)
        usage = await self.usage(session, user_id=user_id, exclude_id=deployment_id)
        self._check_totals(user_id, usage, cpu=spec.cpu * spec.replicas, memory_mb=spec.memory_mb * spec.replicas)

    def _check_totals(self, user_id: str, usage: QuotaUsage, *, cpu: float, memory_mb: int) -> None:
        settings = self._settings
        if usage.user_cpu + cpu > settings.quota_user_cpu_total:
            logger.info("quota_rejected user_id=%s dimension=cpu used=%s requested=%s", user_id, usage.user_cpu, cpu)
            raise QuotaExceededError(
                f"user {user_id} cpu total {usage.user_cpu + cpu} exceeds {settings.quota_user_cpu_total}"
            )
        if usage.user_memory_mb + memory_mb > settings.quota_user_memory_mb_total:
            logger.info(
                "quota_rejected user_id=%s dimension=memory used=%s requested=%s",
                user_id,
                usage.user_memory_mb,
                memory_mb,
            )
            raise QuotaExceededError(
                f"user {user_id} memory total {usage.user_memory_mb + memory_mb}MB exceeds "
                f"{settings.quota_user_memory_mb_total}MB"
            )

    def check_tenant(self, quota: int) -> None:
        if quota <= 0:
            raise ValidationError("tenant quota must be positive")
        if quota > self._settings.tenant_quota_max:
            raise QuotaExceededError(f"tenant quota {quota} exceeds limit {self._settings.tenant_quota_max}")
