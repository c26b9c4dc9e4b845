"""
Orchestrator: the public control-plane contract.

Owns admission (validation and quota), the per-deployment mutual exclusion of
mutating operations, and delegates the heavy lifting to the deployer, the
registry and the backup executor. One instance is constructed and injected;
there is no module-level state.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import re
import time
from typing import Any, AsyncIterator, Mapping

import pydantic
from sqlalchemy.exc import IntegrityError

from nexusdb.core.clock import TimeProvider, as_utc, utc_now
from nexusdb.core.config import Settings
from nexusdb.core.errors import (
    BackupFailure,
    InvalidStateTransitionError,
    NotFoundError,
    ScalingConflictError,
    TenantConflictError,
    ValidationError,
)
from nexusdb.domain.models import BackupRecord, DeploymentRecord, ScalingEvent, ScalingPolicy, TenantRecord, new_id
from nexusdb.domain.requests import DeployRequest, ResourceSpec, ScalingPolicyInput
from nexusdb.domain.state import (
    SERVING_STATES,
    BackupStatus,
    BackupType,
    DeploymentState,
    Environment,
    HealthStatus,
    IsolationMode,
    RoutingStrategy,
)
from nexusdb.persistence.db import SessionFactory, session_scope
from nexusdb.persistence.repos import backups as backups_repo
from nexusdb.persistence.repos import deployments as deployments_repo
from nexusdb.persistence.repos import scaling as scaling_repo
from nexusdb.persistence.repos import schedules as schedules_repo
from nexusdb.persistence.repos import tenants as tenants_repo
from nexusdb.providers.substrate.base import ExecutionSubstrate
from nexusdb.services import cron
from nexusdb.services.backup import BackupExecutor, RestoreResult
from nexusdb.services.deployer import Deployer, DeploymentProgress
from nexusdb.services.events import EventBus
from nexusdb.services.health import average_utilization, summarize_status
from nexusdb.services.lifecycle import DeploymentLifecycle
from nexusdb.services.quota import QuotaService
from nexusdb.services.registry import Registry, RouteDecision, TenantConnection
from nexusdb.services.resilience import KeyedLocks
from nexusdb.services.scaling import (
    ScalingDecision,
    ScalingResult,
    clamp_replicas,
    evaluate,
    validate_bounds,
)
from nexusdb.services.telemetry import HealthSnapshotStore, ResourceUtilization, increment_counter


logger = logging.getLogger(__name__)

_SCHEMA_KEY = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_PREFIX_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")


@dataclass(frozen=True)
class DecommissionAck:
    deployment_id: str
    accepted: bool
    state: str


@dataclass(frozen=True)
class DeploymentHealth:
    deployment_id: str
    state: str
    status: HealthStatus
    healthy_entries: int
    total_entries: int
    latency_ms: float | None
    resource_utilization: ResourceUtilization | None
    last_checked: datetime | None


@dataclass(frozen=True)
class SystemHealth:
    status: HealthStatus
    generated_at: datetime
    deployments: list[DeploymentHealth] = field(default_factory=list)
    state_counts: dict[str, int] = field(default_factory=dict)
    registry: dict[str, dict[str, int]] = field(default_factory=dict)


def _parse_request(request: DeployRequest | Mapping[str, Any]) -> DeployRequest:
    if isinstance(request, DeployRequest):
        return request
    try:
        return DeployRequest.model_validate(dict(request))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"invalid deploy request: {exc.errors()}") from exc


def _validate_isolation_key(mode: IsolationMode, isolation_key: str) -> None:
    pattern = _SCHEMA_KEY if mode == IsolationMode.SCHEMA else _PREFIX_KEY
    if not pattern.match(isolation_key or ""):
        raise ValidationError(f"isolation key {isolation_key!r} is not valid for {mode.value} isolation")


class Orchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        sessions: SessionFactory,
        events: EventBus,
        lifecycle: DeploymentLifecycle,
        deployer: Deployer,
        registry: Registry,
        backups: BackupExecutor,
        quota: QuotaService,
        substrate: ExecutionSubstrate,
        snapshots: HealthSnapshotStore,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._events = events
        self._lifecycle = lifecycle
        self._deployer = deployer
        self._registry = registry
        self._backups = backups
        self._quota = quota
        self._substrate = substrate
        self._snapshots = snapshots
        self._now = time_provider or utc_now
        self._locks = KeyedLocks()
        # Serializes quota admission so concurrent Deploys cannot both take the last slot.
        self._admission = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._scale_cancels: dict[str, asyncio.Event] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def registry(self) -> Registry:
        return self._registry

    # mutual exclusion

    def is_busy(self, deployment_id: str) -> bool:
        return self._locks.locked(deployment_id)

    async def in_maintenance_window(self, deployment_id: str, now: datetime | None = None) -> bool:
        now = now or self._now()
        async with self._sessions() as session:
            windows = await schedules_repo.list_maintenance_windows(session, deployment_id)
        return any(cron.active_window_start(window.cron, window.duration_seconds, now) for window in windows)

    @asynccontextmanager
    async def _mutating(self, deployment_id: str, operation: str, *, wait: bool = False) -> AsyncIterator[None]:
        # Conflicting operations fail fast, unless the caller asked to queue or a
        # maintenance window is open, in which case they wait their turn.
        lock = self._locks.get(deployment_id)
        if lock.locked():
            if not (wait or await self.in_maintenance_window(deployment_id)):
                increment_counter("mutating_conflicts_total")
                raise ScalingConflictError(
                    f"{operation} rejected: another mutating operation is in flight for deployment {deployment_id}"
                )
            logger.info("mutating_operation_queued deployment_id=%s operation=%s", deployment_id, operation)
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._settings.maintenance_queue_timeout_s)
            except TimeoutError as exc:
                raise ScalingConflictError(
                    f"{operation} timed out waiting for deployment {deployment_id} to become idle"
                ) from exc
        else:
            await lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def _spawn(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # deployments

    async def deploy(self, request: DeployRequest | Mapping[str, Any]) -> DeploymentRecord:
        parsed = _parse_request(request)
        spec = parsed.resource_spec
        self._quota.check_spec(spec)
        strategy = parsed.routing_strategy or RoutingStrategy(self._settings.registry_default_strategy)
        ttl = parsed.ttl_seconds
        if ttl is None and parsed.environment == Environment.DEV:
            ttl = self._settings.dev_default_ttl_s
        now = self._now()
        async with self._admission:
            async with session_scope(self._sessions) as session:
                await self._quota.check(session, user_id=parsed.user_id, spec=spec)
                record = DeploymentRecord(
                    id=new_id(),
                    user_id=parsed.user_id,
                    name=parsed.name,
                    engine_type=parsed.engine_type.value,
                    environment=parsed.environment.value,
                    state=DeploymentState.REQUESTED.value,
                    tenant_isolation_mode=parsed.tenant_isolation_mode.value,
                    cpu=spec.cpu,
                    memory_mb=spec.memory_mb,
                    storage_gb=spec.storage_gb,
                    replicas=spec.replicas,
                    tls_enabled=parsed.tls_enabled,
                    routing_strategy=strategy.value,
                    endpoints=[],
                    substrate_handles=[],
                    expires_at=now + timedelta(seconds=ttl) if ttl else None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
        self._registry.set_strategy(record.id, strategy)
        increment_counter("deployments_requested_total")
        logger.info(
            "deployment_requested deployment_id=%s user_id=%s engine_type=%s environment=%s replicas=%s",
            record.id,
            record.user_id,
            record.engine_type,
            record.environment,
            record.replicas,
        )
        self._events.emit("deployment.state_changed", record.id, from_state=None, to_state=record.state, reason=None)
        ctx = self._deployer.new_context(record)
        self._spawn(self._run_pipeline(ctx), name=f"deploy:{record.id}")
        return record

    async def _run_pipeline(self, ctx: Any) -> None:
        # Deploy-completion holds the deployment lock like any other mutating operation.
        async with self._locks.get(ctx.deployment_id):
            await self._deployer.run(ctx)

    async def get_deployment(self, deployment_id: str) -> DeploymentRecord:
        async with self._sessions() as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
        if record is None:
            raise NotFoundError(f"deployment {deployment_id} not found")
        return record

    async def list_deployments(
        self,
        *,
        user_id: str | None = None,
        state: DeploymentState | str | None = None,
    ) -> list[DeploymentRecord]:
        async with self._sessions() as session:
            return await deployments_repo.list_deployments(session, user_id=user_id, state=state)

    async def list_transitions(self, deployment_id: str) -> list[tuple[str, str]]:
        async with self._sessions() as session:
            rows = await deployments_repo.list_transitions(session, deployment_id)
        return [(row.from_state, row.to_state) for row in rows]

    async def get_deployment_progress(self, deployment_id: str) -> DeploymentProgress:
        record = await self.get_deployment(deployment_id)
        return self._deployer.progress(record)

    async def cancel_deployment(self, deployment_id: str) -> bool:
        await self.get_deployment(deployment_id)
        if self._deployer.cancel(deployment_id):
            return True
        event = self._scale_cancels.get(deployment_id)
        if event is not None:
            event.set()
            logger.info("scaling_cancel_requested deployment_id=%s", deployment_id)
            return True
        return False

    async def decommission(self, deployment_id: str, *, wait: bool = False, reason: str | None = None) -> DecommissionAck:
        async with self._mutating(deployment_id, "decommission", wait=wait):
            async with session_scope(self._sessions) as session:
                record = await deployments_repo.get_deployment(session, deployment_id)
                if record is None:
                    raise NotFoundError(f"deployment {deployment_id} not found")
                await self._lifecycle.transition(session, record, DeploymentState.DECOMMISSIONING, reason=reason)
        self._spawn(self._finish_decommission(deployment_id), name=f"decommission:{deployment_id}")
        return DecommissionAck(deployment_id=deployment_id, accepted=True, state=DeploymentState.DECOMMISSIONING.value)

    async def _finish_decommission(self, deployment_id: str) -> None:
        async with self._locks.get(deployment_id):
            async with self._sessions() as session:
                record = await deployments_repo.get_deployment(session, deployment_id)
                tenants = await tenants_repo.list_tenants(session, deployment_id)
            if record is None:
                return
            tenant_handles = {tenant.id: tenant.substrate_handle for tenant in tenants if tenant.substrate_handle}
            try:
                remaining = await self._deployer.teardown(record, tenant_handles)
            except Exception as exc:  # noqa: BLE001 - a teardown fault must still settle the record
                logger.exception("deployment_teardown_failed deployment_id=%s", deployment_id)
                remaining = list(record.substrate_handles or []) + list(tenant_handles.values())
                reason = f"teardown failed: {exc}"
            else:
                reason = f"teardown left {len(remaining)} substrate handle(s)" if remaining else None
            target = DeploymentState.FAILED if remaining else DeploymentState.DESTROYED
            async with session_scope(self._sessions) as session:
                fresh = await deployments_repo.get_deployment(session, deployment_id)
                if fresh is None:
                    return
                await self._lifecycle.transition(session, fresh, target, reason=reason)
                fresh.substrate_handles = remaining
        self._deployer.forget(deployment_id)
        if target == DeploymentState.DESTROYED:
            increment_counter("deployments_destroyed_total")
            self._events.emit("deployment.destroyed", deployment_id)
        else:
            self._events.emit("deployment.failed", deployment_id, stage="decommission", reason=reason)

    # scaling

    async def scale(
        self,
        deployment_id: str,
        desired_replicas: int,
        *,
        trigger: str = "manual",
        wait: bool = False,
    ) -> ScalingResult:
        async with self._mutating(deployment_id, "scale", wait=wait):
            return await self._scale_locked(deployment_id, desired_replicas, trigger=trigger)

    async def _scale_locked(self, deployment_id: str, desired: int, *, trigger: str) -> ScalingResult:
        started = time.monotonic()
        async with self._sessions() as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            policy = await scaling_repo.get_policy(session, deployment_id)
        if record is None:
            raise NotFoundError(f"deployment {deployment_id} not found")
        if record.state != DeploymentState.ACTIVE.value:
            raise InvalidStateTransitionError(f"deployment {deployment_id} is {record.state}, not active")
        current = record.replicas
        try:
            validate_bounds(policy, desired, quota_max_replicas=self._settings.quota_max_replicas)
        except ValidationError as exc:
            await self._record_scaling_event(deployment_id, trigger, current, desired, "rejected", str(exc))
            raise
        if desired == current:
            return ScalingResult(deployment_id, current, current, trigger, list(record.endpoints or []), 0.0)
        spec = ResourceSpec(cpu=record.cpu, memory_mb=record.memory_mb, storage_gb=record.storage_gb, replicas=desired)
        async with self._sessions() as session:
            await self._quota.check_scale(session, user_id=record.user_id, deployment_id=deployment_id, spec=spec)
        await self._set_state(deployment_id, DeploymentState.SCALING, reason=f"{trigger} scale {current}->{desired}")
        cancel_event = asyncio.Event()
        self._scale_cancels[deployment_id] = cancel_event
        try:
            if desired > current:
                handles, endpoints = await self._deployer.add_replicas(record, desired, cancel_event=cancel_event)
            else:
                handles, endpoints = await self._deployer.remove_replicas(record, desired)
        except Exception as exc:  # noqa: BLE001 - new replicas are already rolled back; keep serving on the old set
            logger.warning(
                "deployment_scale_failed deployment_id=%s from=%s to=%s error=%s",
                deployment_id,
                current,
                desired,
                exc,
            )
            await self._set_state(deployment_id, DeploymentState.ACTIVE, reason=f"scale failed: {exc}")
            await self._record_scaling_event(deployment_id, trigger, current, desired, "failed", str(exc))
            raise
        finally:
            self._scale_cancels.pop(deployment_id, None)
        now = self._now()
        async with session_scope(self._sessions) as session:
            fresh = await deployments_repo.get_deployment(session, deployment_id)
            if fresh is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            await self._lifecycle.transition(session, fresh, DeploymentState.ACTIVE)
            fresh.replicas = desired
            fresh.substrate_handles = handles
            fresh.endpoints = endpoints
            stored_policy = await scaling_repo.get_policy(session, deployment_id)
            if stored_policy is not None:
                stored_policy.last_scaled_at = now
            session.add(
                ScalingEvent(
                    id=new_id(),
                    deployment_id=deployment_id,
                    trigger=trigger,
                    from_replicas=current,
                    to_replicas=desired,
                    outcome="succeeded",
                    created_at=now,
                )
            )
        duration_ms = (time.monotonic() - started) * 1000.0
        increment_counter(f"scaling_operations_total.{trigger}")
        logger.info(
            "deployment_scaled deployment_id=%s from=%s to=%s trigger=%s duration_ms=%.1f",
            deployment_id,
            current,
            desired,
            trigger,
            duration_ms,
        )
        self._events.emit("deployment.scaled", deployment_id, from_replicas=current, to_replicas=desired, trigger=trigger)
        return ScalingResult(deployment_id, current, desired, trigger, endpoints, duration_ms)

    async def _set_state(self, deployment_id: str, target: DeploymentState, *, reason: str | None = None) -> None:
        async with session_scope(self._sessions) as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            await self._lifecycle.transition(session, record, target, reason=reason)

    async def _record_scaling_event(
        self,
        deployment_id: str,
        trigger: str,
        from_replicas: int,
        to_replicas: int,
        outcome: str,
        reason: str | None,
    ) -> None:
        async with session_scope(self._sessions) as session:
            session.add(
                ScalingEvent(
                    id=new_id(),
                    deployment_id=deployment_id,
                    trigger=trigger,
                    from_replicas=from_replicas,
                    to_replicas=to_replicas,
                    outcome=outcome,
                    reason=reason,
                    created_at=self._now(),
                )
            )

    async def set_scaling_policy(
        self,
        deployment_id: str,
        policy: ScalingPolicyInput | Mapping[str, Any],
    ) -> ScalingPolicy:
        if not isinstance(policy, ScalingPolicyInput):
            try:
                policy = ScalingPolicyInput.model_validate(dict(policy))
            except pydantic.ValidationError as exc:
                raise ValidationError(f"invalid scaling policy: {exc.errors()}") from exc
        if policy.max_replicas > self._settings.quota_max_replicas:
            raise ValidationError(
                f"max_replicas {policy.max_replicas} exceeds quota limit {self._settings.quota_max_replicas}"
            )
        async with session_scope(self._sessions) as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            stored = await scaling_repo.get_policy(session, deployment_id)
            if stored is None:
                stored = ScalingPolicy(id=new_id(), deployment_id=deployment_id)
                session.add(stored)
            for name, value in policy.model_dump().items():
                setattr(stored, name, value)
            stored.updated_at = self._now()
            replicas = record.replicas
            state = record.state
        logger.info(
            "scaling_policy_set deployment_id=%s min=%s max=%s cooldown_s=%s",
            deployment_id,
            stored.min_replicas,
            stored.max_replicas,
            stored.cooldown_seconds,
        )
        clamped = clamp_replicas(stored, replicas)
        if clamped != replicas and state == DeploymentState.ACTIVE.value:
            await self.scale(deployment_id, clamped, trigger="policy", wait=True)
        return stored

    async def get_scaling_policy(self, deployment_id: str) -> ScalingPolicy | None:
        async with self._sessions() as session:
            return await scaling_repo.get_policy(session, deployment_id)

    async def get_scaling_history(self, deployment_id: str, *, limit: int = 50) -> list[ScalingEvent]:
        async with self._sessions() as session:
            return await scaling_repo.list_events(session, deployment_id, limit=limit)

    async def current_utilization(self, record: DeploymentRecord) -> ResourceUtilization | None:
        # Averaged across replicas; unreachable replicas are left out.
        timeout_s = max(0.001, self._settings.probe_timeout_ms / 1000.0)
        samples: list[ResourceUtilization] = []
        for handle in record.substrate_handles or []:
            try:
                samples.append(await asyncio.wait_for(self._substrate.get_metrics(handle), timeout=timeout_s))
            except Exception as exc:  # noqa: BLE001 - missing samples only narrow the average
                logger.info("autoscaling_metrics_unavailable deployment_id=%s handle=%s error=%s", record.id, handle, exc)
        if not samples:
            return None
        return average_utilization(samples)

    async def evaluate_autoscaling(self, deployment_id: str, *, wait: bool = False) -> ScalingDecision:
        async with self._sessions() as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            policy = await scaling_repo.get_policy(session, deployment_id)
        if record is None:
            raise NotFoundError(f"deployment {deployment_id} not found")
        replicas = record.replicas
        if policy is None:
            return ScalingDecision("none", replicas, replicas, "no scaling policy")
        if record.state != DeploymentState.ACTIVE.value:
            return ScalingDecision("none", replicas, replicas, f"deployment is {record.state}")
        utilization = await self.current_utilization(record)
        if utilization is None:
            return ScalingDecision("none", replicas, replicas, "metrics unavailable")
        decision = evaluate(policy, utilization, replicas, self._now())
        if decision.action == "none":
            return decision
        logger.info(
            "autoscaling_decision deployment_id=%s action=%s target=%s reason=%s",
            deployment_id,
            decision.action,
            decision.target_replicas,
            decision.reason,
        )
        await self.scale(deployment_id, decision.target_replicas, trigger="reactive", wait=wait)
        return decision

    # backups

    async def create_backup(
        self,
        deployment_id: str,
        backup_type: BackupType | str = BackupType.FULL,
        *,
        schedule_slot: str | None = None,
        wait: bool = False,
    ) -> BackupRecord:
        backup_type = BackupType(backup_type)
        async with self._mutating(deployment_id, "backup", wait=wait):
            async with self._sessions() as session:
                record = await deployments_repo.get_deployment(session, deployment_id)
                existing = (
                    await backups_repo.get_by_slot(session, deployment_id, schedule_slot) if schedule_slot else None
                )
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            if existing is not None:
                # One backup per schedule slot; re-firing returns the original.
                logger.info("backup_slot_exists deployment_id=%s slot=%s backup_id=%s", deployment_id, schedule_slot, existing.id)
                return existing
            if record.state != DeploymentState.ACTIVE.value:
                raise InvalidStateTransitionError(f"deployment {deployment_id} is {record.state}; backups need an active deployment")
            base = await self._backups.resolve_base(deployment_id, backup_type)
            now = self._now()
            backup = BackupRecord(
                id=new_id(),
                deployment_id=deployment_id,
                type=backup_type.value,
                status=BackupStatus.PENDING.value,
                parent_backup_id=base.id if base is not None else None,
                schedule_slot=schedule_slot,
                retention_until=now + timedelta(days=self._settings.backup_retention_days),
                created_at=now,
                updated_at=now,
            )
            try:
                async with session_scope(self._sessions) as session:
                    session.add(backup)
            except IntegrityError:
                async with self._sessions() as session:
                    existing = await backups_repo.get_by_slot(session, deployment_id, schedule_slot or "")
                if existing is None:
                    raise
                return existing
            return await self._backups.execute(backup.id)

    async def get_backup(self, backup_id: str) -> BackupRecord:
        async with self._sessions() as session:
            backup = await backups_repo.get_backup(session, backup_id)
        if backup is None:
            raise NotFoundError(f"backup {backup_id} not found")
        return backup

    async def list_backups(self, deployment_id: str) -> list[BackupRecord]:
        async with self._sessions() as session:
            return await backups_repo.list_backups(session, deployment_id)

    async def restore(self, deployment_id: str, backup_id: str, *, wait: bool = False) -> RestoreResult:
        async with self._mutating(deployment_id, "restore", wait=wait):
            record = await self.get_deployment(deployment_id)
            if record.state != DeploymentState.ACTIVE.value:
                raise InvalidStateTransitionError(f"deployment {deployment_id} is {record.state}; restore needs an active deployment")
            return await self._backups.restore(record, backup_id)

    async def prune_backups(self, now: datetime | None = None) -> list[str]:
        return await self._backups.prune_expired(now)

    # tenants

    async def create_tenant(self, deployment_id: str, isolation_key: str, quota: int, *, wait: bool = False) -> TenantRecord:
        self._quota.check_tenant(quota)
        # Held until the row is committed so a concurrent decommission sees the tenant and its instance.
        async with self._mutating(deployment_id, "create_tenant", wait=wait):
            async with self._sessions() as session:
                record = await deployments_repo.get_deployment(session, deployment_id)
                existing = await tenants_repo.get_by_isolation_key(session, deployment_id, isolation_key)
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            if DeploymentState(record.state) not in SERVING_STATES:
                raise InvalidStateTransitionError(f"deployment {deployment_id} is {record.state}; tenants need a live deployment")
            mode = IsolationMode(record.tenant_isolation_mode)
            _validate_isolation_key(mode, isolation_key)
            if existing is not None:
                raise TenantConflictError(f"isolation key {isolation_key!r} already exists for deployment {deployment_id}")
            tenant_id = new_id()
            handle: str | None = None
            if mode == IsolationMode.DEDICATED_INSTANCE:
                handle, _ = await self._deployer.provision_tenant_instance(record, tenant_id)
            now = self._now()
            tenant = TenantRecord(
                id=tenant_id,
                deployment_id=deployment_id,
                isolation_key=isolation_key,
                quota=quota,
                substrate_handle=handle,
                created_at=now,
                updated_at=now,
            )
            try:
                async with session_scope(self._sessions) as session:
                    session.add(tenant)
            except IntegrityError as exc:
                if handle is not None:
                    await self._deployer.destroy_tenant_instance(deployment_id, tenant_id, handle)
                raise TenantConflictError(
                    f"isolation key {isolation_key!r} already exists for deployment {deployment_id}"
                ) from exc
        logger.info(
            "tenant_created tenant_id=%s deployment_id=%s isolation_mode=%s",
            tenant.id,
            deployment_id,
            mode.value,
        )
        self._events.emit("tenant.created", deployment_id, tenant_id=tenant.id, isolation_key=isolation_key)
        return tenant

    async def remove_tenant(self, tenant_id: str, *, wait: bool = False) -> None:
        async with self._sessions() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise NotFoundError(f"tenant {tenant_id} not found")
        deployment_id = tenant.deployment_id
        async with self._mutating(deployment_id, "remove_tenant", wait=wait):
            async with self._sessions() as session:
                tenant = await tenants_repo.get_tenant(session, tenant_id)
            if tenant is None:
                # Removed while this call was queued.
                raise NotFoundError(f"tenant {tenant_id} not found")
            if tenant.substrate_handle is not None:
                await self._deployer.destroy_tenant_instance(deployment_id, tenant.id, tenant.substrate_handle)
            async with session_scope(self._sessions) as session:
                stored = await tenants_repo.get_tenant(session, tenant_id)
                if stored is not None:
                    await session.delete(stored)
        logger.info("tenant_removed tenant_id=%s deployment_id=%s", tenant_id, deployment_id)
        self._events.emit("tenant.removed", deployment_id, tenant_id=tenant_id)

    async def list_tenants(self, deployment_id: str) -> list[TenantRecord]:
        async with self._sessions() as session:
            return await tenants_repo.list_tenants(session, deployment_id)

    async def resolve_tenant_connection(self, tenant_id: str) -> TenantConnection:
        async with self._sessions() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            record = await deployments_repo.get_deployment(session, tenant.deployment_id) if tenant else None
        if tenant is None or record is None:
            raise NotFoundError(f"tenant {tenant_id} not found")
        return self._registry.resolve_tenant(
            deployment_id=record.id,
            tenant_id=tenant.id,
            isolation_mode=record.tenant_isolation_mode,
            isolation_key=tenant.isolation_key,
        )

    # routing

    def route(self, deployment_id: str, *, tenant_id: str | None = None) -> RouteDecision:
        return self._registry.route(deployment_id, tenant_id=tenant_id)

    def release(
        self,
        decision: RouteDecision,
        *,
        success: bool,
        latency_ms: float | None = None,
        reason: str | None = None,
    ) -> None:
        self._registry.release(decision, success=success, latency_ms=latency_ms, reason=reason)

    async def set_routing_strategy(self, deployment_id: str, strategy: RoutingStrategy | str) -> None:
        strategy = RoutingStrategy(strategy)
        async with session_scope(self._sessions) as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            record.routing_strategy = strategy.value
        self._registry.set_strategy(deployment_id, strategy)

    # health

    async def get_system_health(self) -> SystemHealth:
        async with self._sessions() as session:
            records = await deployments_repo.list_deployments(session)
        state_counts: dict[str, int] = {}
        deployments: list[DeploymentHealth] = []
        for record in records:
            state_counts[record.state] = state_counts.get(record.state, 0) + 1
            if record.state == DeploymentState.DESTROYED.value:
                continue
            entries = self._registry.entries(record.id, all_tenants=False)
            if record.state == DeploymentState.FAILED.value:
                status = HealthStatus.UNHEALTHY
            elif DeploymentState(record.state) in SERVING_STATES:
                status = self._registry.deployment_health(record.id)
            else:
                status = HealthStatus.UNKNOWN
            latest = self._snapshots.latest(record.id)
            deployments.append(
                DeploymentHealth(
                    deployment_id=record.id,
                    state=record.state,
                    status=status,
                    healthy_entries=sum(1 for entry in entries if entry.health_status == HealthStatus.HEALTHY),
                    total_entries=len(entries),
                    latency_ms=latest.latency_ms if latest else None,
                    resource_utilization=latest.resource_utilization if latest else None,
                    last_checked=latest.timestamp if latest else None,
                )
            )
        serving = [item.status for item in deployments if DeploymentState(item.state) in SERVING_STATES]
        overall = summarize_status(serving) if serving else HealthStatus.HEALTHY
        return SystemHealth(
            status=overall,
            generated_at=self._now(),
            deployments=deployments,
            state_counts=state_counts,
            registry=self._registry.stats(),
        )

    # maintenance entry points used by the scheduler

    async def list_expired_deployments(self, now: datetime | None = None) -> list[DeploymentRecord]:
        async with self._sessions() as session:
            return await deployments_repo.list_expired(session, now=now or self._now())

    async def purge_destroyed(self, now: datetime | None = None) -> list[str]:
        now = now or self._now()
        cutoff = now - timedelta(seconds=self._settings.destroyed_purge_after_s)
        purged: list[str] = []
        async with session_scope(self._sessions) as session:
            for record in await deployments_repo.list_deployments(session, state=DeploymentState.DESTROYED):
                destroyed_at = as_utc(record.destroyed_at)
                if destroyed_at is None or destroyed_at > cutoff:
                    continue
                await deployments_repo.purge_deployment(session, record.id)
                purged.append(record.id)
        for deployment_id in purged:
            self._locks.discard(deployment_id)
            self._deployer.forget(deployment_id)
        if purged:
            logger.info("deployments_purged count=%s", len(purged))
        return purged

    async def sweep_orphans(self) -> int:
        # Retry destruction of handles left behind by failed rollbacks or teardowns.
        released = await self._deployer.retry_orphans()
        async with self._sessions() as session:
            failed = await deployments_repo.list_deployments(session, state=DeploymentState.FAILED)
        for record in failed:
            handles = list(record.substrate_handles or [])
            if not handles or self._locks.locked(record.id):
                continue
            async with self._locks.get(record.id):
                remaining = await self._deployer.release_handles(record.id, handles)
                async with session_scope(self._sessions) as session:
                    fresh = await deployments_repo.get_deployment(session, record.id)
                    if fresh is not None:
                        fresh.substrate_handles = remaining
            released += len(handles) - len(remaining)
        if released:
            logger.info("orphan_handles_released count=%s", released)
        return released

    async def recover(self) -> None:
        # Rebuild in-memory state after a restart: registry entries for serving deployments,
        # and pipelines that died mid-flight are failed so their resources get swept.
        async with self._sessions() as session:
            records = await deployments_repo.list_deployments(session)
            tenants = {record.id: await tenants_repo.list_tenants(session, record.id) for record in records}
        for record in records:
            state = DeploymentState(record.state)
            if state in SERVING_STATES:
                self._deployer.adopt(record)
                for endpoint, handle in zip(record.endpoints or [], record.substrate_handles or []):
                    self._registry.register(record.id, endpoint, handle=handle)
                self._registry.set_strategy(record.id, record.routing_strategy)
                for tenant in tenants.get(record.id, []):
                    if tenant.substrate_handle:
                        await self._deployer.adopt_tenant_instance(record, tenant.id, tenant.substrate_handle)
            elif not self._deployer.is_running(record.id) and state not in (
                DeploymentState.DESTROYED,
                DeploymentState.FAILED,
            ):
                async with session_scope(self._sessions) as session:
                    fresh = await deployments_repo.get_deployment(session, record.id)
                    if fresh is not None:
                        await self._lifecycle.transition(
                            session, fresh, DeploymentState.FAILED, reason="interrupted by control-plane restart"
                        )
                        fresh.failed_stage = "recovery"

    # lifecycle of the orchestrator itself

    async def wait_for_idle(self, timeout: float | None = None) -> None:
        # Await spawned pipelines and decommissions, including ones spawned while waiting.
        async def _drain() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if timeout is None:
            await _drain()
        else:
            await asyncio.wait_for(_drain(), timeout=timeout)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("orchestrator_shutdown")
