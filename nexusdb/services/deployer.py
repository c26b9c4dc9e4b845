"""
Deployment pipeline.

Runs one deployment through ten ordered stages. Every stage is idempotent and
retried on transient failures under its own timeout, all within an aggregate
deadline. Cancellation is observed at stage boundaries. Any terminal failure
rolls back everything earlier stages allocated, in reverse order, before the
record is marked failed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import ipaddress
import logging
import time
from typing import Awaitable, Callable

from nexusdb.core.clock import TimeProvider, utc_now
from nexusdb.core.config import Settings
from nexusdb.core.errors import (
    ConfigurationError,
    HealthCheckFailure,
    NotFoundError,
    PipelineCancelledError,
    PipelineTimeoutError,
    is_transient,
)
from nexusdb.domain.models import DeploymentRecord
from nexusdb.domain.requests import ResourceSpec
from nexusdb.domain.state import DeploymentState, EngineType, HealthStatus, IsolationMode
from nexusdb.persistence.db import SessionFactory, session_scope
from nexusdb.persistence.repos import deployments as deployments_repo
from nexusdb.providers.substrate.base import ExecutionSubstrate, ProvisionSpec
from nexusdb.providers.templates import EngineConfig, EngineTemplateProvider
from nexusdb.services.capacity import Node, NodePool
from nexusdb.services.credentials import CredentialVault
from nexusdb.services.events import EventBus
from nexusdb.services.health import HealthProber
from nexusdb.services.lifecycle import DeploymentLifecycle
from nexusdb.services.quota import QuotaService
from nexusdb.services.registry import Registry
from nexusdb.services.resilience import Bulkhead, RetryPolicy, pipeline_retry_policy, retry_async
from nexusdb.services.telemetry import HealthSnapshot, HealthSnapshotStore, increment_counter, set_gauge


logger = logging.getLogger(__name__)

STAGE_PENDING = "pending"
STAGE_RUNNING = "running"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"
STAGE_SKIPPED = "skipped"


@dataclass
class StageProgress:
    index: int
    name: str
    status: str = STAGE_PENDING
    attempts: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class DeploymentProgress:
    deployment_id: str
    state: str
    stages: tuple[StageProgress, ...]
    percent_complete: float
    current_stage: str | None


@dataclass
class PipelineContext:
    deployment_id: str
    user_id: str
    engine_type: EngineType
    spec: ResourceSpec
    isolation_mode: IsolationMode
    tls_enabled: bool
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    deadline: float | None = None
    node: Node | None = None
    config: EngineConfig | None = None
    handles: list[str] = field(default_factory=list)
    endpoints: list[str] = field(default_factory=list)
    entry_ids: list[str] = field(default_factory=list)
    credentials_issued: bool = False
    stages: list[StageProgress] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "PipelineContext":
        return cls(
            deployment_id=record.id,
            user_id=record.user_id,
            engine_type=EngineType(record.engine_type),
            spec=ResourceSpec(
                cpu=record.cpu,
                memory_mb=record.memory_mb,
                storage_gb=record.storage_gb,
                replicas=record.replicas,
            ),
            isolation_mode=IsolationMode(record.tenant_isolation_mode),
            tls_enabled=record.tls_enabled,
        )


@dataclass(frozen=True)
class _Stage:
    name: str
    # State the record must be in while the stage runs; None keeps the current state.
    enter_state: DeploymentState | None
    run: Callable[["Deployer", PipelineContext], Awaitable[None]]
    timeout_attr: str = "pipeline_stage_timeout_s"
    retry_health: bool = False


def build_endpoint(config: EngineConfig, node: Node, index: int, *, tls: bool) -> str:
    scheme = config.scheme
    if tls and scheme == "redis":
        scheme = "rediss"
    return f"{scheme}://{node.address}:{config.port + index}/{config.database}"


class Deployer:
    def __init__(
        self,
        *,
        settings: Settings,
        sessions: SessionFactory,
        lifecycle: DeploymentLifecycle,
        events: EventBus,
        quota: QuotaService,
        nodes: NodePool,
        templates: EngineTemplateProvider,
        substrate: ExecutionSubstrate,
        registry: Registry,
        prober: HealthProber,
        snapshots: HealthSnapshotStore,
        credentials: CredentialVault,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._lifecycle = lifecycle
        self._events = events
        self._quota = quota
        self._nodes = nodes
        self._templates = templates
        self._substrate = substrate
        self._registry = registry
        self._prober = prober
        self._snapshots = snapshots
        self._credentials = credentials
        self._now = time_provider or utc_now
        # Global capacity limit on concurrently running pipelines.
        self._bulkhead = Bulkhead("pipelines", settings.pipeline_max_concurrency)
        self._contexts: dict[str, PipelineContext] = {}
        self._progress: dict[str, list[StageProgress]] = {}
        # Handles that could not be destroyed outside a failed pipeline; retried by the orphan sweep.
        self._orphans: dict[str, str] = {}

    # progress and cancellation

    def new_context(self, record: DeploymentRecord) -> PipelineContext:
        ctx = PipelineContext.from_record(record)
        ctx.stages = [StageProgress(index=i + 1, name=stage.name) for i, stage in enumerate(_STAGES)]
        self._contexts[record.id] = ctx
        self._progress[record.id] = ctx.stages
        return ctx

    def progress(self, record: DeploymentRecord) -> DeploymentProgress:
        stages = self._progress.get(record.id)
        if stages is None:
            # Unknown to this process: infer from the persisted state.
            done = record.state == DeploymentState.ACTIVE.value or record.state in (
                DeploymentState.SCALING.value,
                DeploymentState.DECOMMISSIONING.value,
                DeploymentState.DESTROYED.value,
            )
            status = STAGE_COMPLETED if done else STAGE_PENDING
            stages = [StageProgress(index=i + 1, name=stage.name, status=status) for i, stage in enumerate(_STAGES)]
        completed = sum(1 for stage in stages if stage.status == STAGE_COMPLETED)
        current = next((stage.name for stage in stages if stage.status == STAGE_RUNNING), None)
        return DeploymentProgress(
            deployment_id=record.id,
            state=record.state,
            stages=tuple(StageProgress(**vars(stage)) for stage in stages),
            percent_complete=round(100.0 * completed / len(stages), 1),
            current_stage=current,
        )

    def cancel(self, deployment_id: str) -> bool:
        ctx = self._contexts.get(deployment_id)
        if ctx is None:
            return False
        ctx.cancel_event.set()
        logger.info("deployment_cancel_requested deployment_id=%s", deployment_id)
        return True

    def is_running(self, deployment_id: str) -> bool:
        return deployment_id in self._contexts

    def forget(self, deployment_id: str) -> None:
        self._progress.pop(deployment_id, None)

    def adopt(self, record: DeploymentRecord) -> None:
        # Re-account capacity for a deployment that outlived a control-plane restart.
        if record.node_id is None:
            return
        self._nodes.adopt(
            record.id,
            record.node_id,
            cpu=record.cpu * record.replicas,
            memory_mb=record.memory_mb * record.replicas,
        )

    async def adopt_tenant_instance(self, record: DeploymentRecord, tenant_id: str, handle: str) -> str:
        _, config = await self._placement_for(record)
        node = self._nodes.reserve(f"{record.id}:{tenant_id}", cpu=record.cpu, memory_mb=record.memory_mb)
        endpoint = build_endpoint(config, node, 0, tls=record.tls_enabled)
        self._registry.register(record.id, endpoint, tenant_id=tenant_id, handle=handle)
        return endpoint

    # pipeline

    async def run(self, ctx: PipelineContext) -> bool:
        stage_progress: StageProgress | None = None
        try:
            async with self._bulkhead.slot():
                set_gauge("pipelines_running", float(self._bulkhead.in_use))
                ctx.deadline = time.monotonic() + self._settings.pipeline_timeout_s
                for stage, stage_progress in zip(_STAGES, ctx.stages):
                    self._check_boundary(ctx)
                    if stage.enter_state is not None:
                        await self._transition(ctx.deployment_id, stage.enter_state)
                    await self._run_stage(ctx, stage, stage_progress)
            increment_counter("deployments_succeeded_total")
            return True
        except asyncio.CancelledError:
            # Task cancellation takes the same rollback path as a stage failure.
            await self._fail(ctx, stage_progress, PipelineCancelledError("pipeline task cancelled"))
            raise
        except Exception as exc:  # noqa: BLE001 - every failure path ends in rollback and Failed
            await self._fail(ctx, stage_progress, exc)
            return False
        finally:
            self._contexts.pop(ctx.deployment_id, None)
            set_gauge("pipelines_running", float(self._bulkhead.in_use))

    def _check_boundary(self, ctx: PipelineContext) -> None:
        if ctx.cancel_event.is_set():
            raise PipelineCancelledError(f"deployment {ctx.deployment_id} cancelled")
        if ctx.deadline is not None and time.monotonic() >= ctx.deadline:
            raise PipelineTimeoutError(f"deployment {ctx.deployment_id} exceeded {self._settings.pipeline_timeout_s}s")

    async def _run_stage(self, ctx: PipelineContext, stage: _Stage, progress: StageProgress) -> None:
        progress.status = STAGE_RUNNING
        progress.started_at = self._now()
        self._events.emit("deployment.stage_started", ctx.deployment_id, stage=stage.name, index=progress.index)
        policy = pipeline_retry_policy(self._settings, timeout_s=getattr(self._settings, stage.timeout_attr))

        async def _attempt() -> None:
            progress.attempts += 1
            await stage.run(self, ctx)

        def _on_retry(attempt: int, exc: Exception) -> None:
            logger.warning(
                "deployment_stage_retry deployment_id=%s stage=%s attempt=%s error=%s",
                ctx.deployment_id,
                stage.name,
                attempt,
                _describe(exc),
            )

        retryable = _health_retryable if stage.retry_health else is_transient
        await retry_async(_attempt, policy=policy, retryable=retryable, deadline=ctx.deadline, on_retry=_on_retry)
        progress.status = STAGE_COMPLETED
        progress.completed_at = self._now()
        self._events.emit(
            "deployment.stage_completed",
            ctx.deployment_id,
            stage=stage.name,
            index=progress.index,
            attempts=progress.attempts,
        )

    async def _fail(self, ctx: PipelineContext, progress: StageProgress | None, exc: BaseException) -> None:
        stage_name = progress.name if progress is not None else "admission"
        reason = f"{stage_name}: {_describe(exc)}"
        if progress is not None and progress.status != STAGE_COMPLETED:
            progress.status = STAGE_FAILED
            progress.error = _describe(exc)
            self._events.emit("deployment.stage_failed", ctx.deployment_id, stage=stage_name, error=progress.error)
        for stage in ctx.stages:
            if stage.status == STAGE_PENDING:
                stage.status = STAGE_SKIPPED
        logger.error("deployment_pipeline_failed deployment_id=%s stage=%s error=%s", ctx.deployment_id, stage_name, _describe(exc))
        remaining = await self.rollback(ctx)
        try:
            await self._transition(
                ctx.deployment_id,
                DeploymentState.FAILED,
                reason=reason,
                failed_stage=stage_name,
                substrate_handles=remaining,
            )
        except NotFoundError:
            logger.warning("deployment_missing_on_fail deployment_id=%s", ctx.deployment_id)
            return
        increment_counter("deployments_failed_total")
        self._events.emit("deployment.failed", ctx.deployment_id, stage=stage_name, reason=reason)

    async def rollback(self, ctx: PipelineContext) -> list[str]:
        # Reverse order of allocation: registry, credentials, substrate instances, node capacity.
        removed = self._registry.deregister_deployment(ctx.deployment_id)
        self._snapshots.forget(ctx.deployment_id)
        if ctx.credentials_issued or self._credentials.is_issued(ctx.deployment_id):
            self._credentials.revoke(ctx.deployment_id)
        remaining = await self.release_handles(ctx.deployment_id, ctx.handles)
        self._nodes.release(ctx.deployment_id)
        logger.error(
            "deployment_rolled_back deployment_id=%s entries_removed=%s handles_released=%s handles_remaining=%s",
            ctx.deployment_id,
            removed,
            len(ctx.handles) - len(remaining),
            len(remaining),
        )
        return remaining

    async def release_handles(self, deployment_id: str, handles: list[str]) -> list[str]:
        # Stop then destroy each handle; destroy is retried, handles that still fail are returned.
        policy = self._cleanup_policy()
        remaining: list[str] = []
        for handle in reversed(handles):
            try:
                await asyncio.wait_for(self._substrate.stop(handle), timeout=policy.timeout_ms / 1000.0)
            except Exception as exc:  # noqa: BLE001 - destroy below is what must succeed
                logger.info("substrate_stop_skipped deployment_id=%s handle=%s error=%s", deployment_id, handle, _describe(exc))
            try:
                await retry_async(lambda handle=handle: self._substrate.destroy(handle), policy=policy)
            except Exception as exc:  # noqa: BLE001 - kept on the record for the orphan sweep
                logger.error("substrate_destroy_failed deployment_id=%s handle=%s error=%s", deployment_id, handle, _describe(exc))
                remaining.append(handle)
        remaining.reverse()
        return remaining

    def _cleanup_policy(self) -> RetryPolicy:
        return pipeline_retry_policy(self._settings)

    def _remember_orphans(self, deployment_id: str, handles: list[str]) -> None:
        for handle in handles:
            self._orphans[handle] = deployment_id
        if handles:
            increment_counter("substrate_orphaned_handles_total", len(handles))

    def orphaned_handles(self) -> dict[str, str]:
        return dict(self._orphans)

    async def retry_orphans(self) -> int:
        released = 0
        for handle, deployment_id in list(self._orphans.items()):
            if not await self.release_handles(deployment_id, [handle]):
                self._orphans.pop(handle, None)
                released += 1
        return released

    # persistence helpers

    async def _transition(
        self,
        deployment_id: str,
        target: DeploymentState,
        *,
        reason: str | None = None,
        **fields: object,
    ) -> None:
        async with session_scope(self._sessions) as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            if DeploymentState(record.state) != target:
                await self._lifecycle.transition(session, record, target, reason=reason)
            for name, value in fields.items():
                setattr(record, name, value)

    async def _update_record(self, deployment_id: str, **fields: object) -> None:
        async with session_scope(self._sessions) as session:
            record = await deployments_repo.get_deployment(session, deployment_id)
            if record is None:
                raise NotFoundError(f"deployment {deployment_id} not found")
            for name, value in fields.items():
                setattr(record, name, value)

    # stages

    async def _stage_quota(self, ctx: PipelineContext) -> None:
        async with session_scope(self._sessions) as session:
            record = await deployments_repo.get_deployment(session, ctx.deployment_id)
            if record is None:
                raise NotFoundError(f"deployment {ctx.deployment_id} not found")
            await self._quota.check(session, user_id=ctx.user_id, spec=ctx.spec, exclude_id=ctx.deployment_id)
            if DeploymentState(record.state) == DeploymentState.REQUESTED:
                await self._lifecycle.transition(session, record, DeploymentState.QUOTA_VALIDATED)

    async def _stage_node_selection(self, ctx: PipelineContext) -> None:
        ctx.node = self._nodes.reserve(
            ctx.deployment_id,
            cpu=ctx.spec.cpu * ctx.spec.replicas,
            memory_mb=ctx.spec.memory_mb * ctx.spec.replicas,
        )
        await self._update_record(ctx.deployment_id, node_id=ctx.node.id)

    async def _stage_config(self, ctx: PipelineContext) -> None:
        ctx.config = await self._templates.generate_config(ctx.engine_type, ctx.spec)
        await self._update_record(ctx.deployment_id, config_digest=ctx.config.digest)

    async def _stage_provision(self, ctx: PipelineContext) -> None:
        node, config = _require_placement(ctx)
        # Resume after the last persisted handle so retries never double-allocate.
        for index in range(len(ctx.handles), ctx.spec.replicas):
            handle = await self._substrate.provision(self._provision_spec(ctx.deployment_id, ctx.engine_type, ctx.spec, node, config, index))
            ctx.handles.append(handle)
            await self._update_record(ctx.deployment_id, substrate_handles=list(ctx.handles))
        for handle in ctx.handles:
            await self._substrate.start(handle)

    async def _stage_network(self, ctx: PipelineContext) -> None:
        _, config = _require_placement(ctx)
        policy = build_network_policy(self._settings, config, ctx.spec.replicas, tls=ctx.tls_enabled)
        await self._update_record(ctx.deployment_id, network_policy_json=policy)

    async def _stage_security(self, ctx: PipelineContext) -> None:
        issued = self._credentials.issue(ctx.deployment_id)
        ctx.credentials_issued = True
        access_policy = {
            "principal": issued.username,
            "grants": ["connect", "read", "write"],
            "isolation_mode": ctx.isolation_mode.value,
            "superuser": False,
        }
        await self._update_record(
            ctx.deployment_id,
            db_username=issued.username,
            db_password_sealed=issued.sealed_password,
            access_policy_json=access_policy,
        )

    async def _stage_monitoring(self, ctx: PipelineContext) -> None:
        # Seed the health history so probes and system health pick the deployment up.
        if self._snapshots.latest(ctx.deployment_id) is None:
            self._snapshots.append(
                HealthSnapshot(
                    deployment_id=ctx.deployment_id,
                    timestamp=self._now(),
                    status=HealthStatus.UNKNOWN,
                    latency_ms=None,
                )
            )
        set_gauge(f"deployment_replicas.{ctx.deployment_id}", float(len(ctx.handles)))

    async def _stage_registration(self, ctx: PipelineContext) -> None:
        node, config = _require_placement(ctx)
        ctx.endpoints = []
        ctx.entry_ids = []
        for index, handle in enumerate(ctx.handles):
            endpoint = build_endpoint(config, node, index, tls=ctx.tls_enabled)
            entry = self._registry.register(ctx.deployment_id, endpoint, handle=handle)
            ctx.endpoints.append(endpoint)
            ctx.entry_ids.append(entry.entry_id)

    async def _stage_health(self, ctx: PipelineContext) -> None:
        await self.validate_entries(ctx.deployment_id, ctx.entry_ids)

    async def _stage_finalize(self, ctx: PipelineContext) -> None:
        await self._transition(
            ctx.deployment_id,
            DeploymentState.ACTIVE,
            endpoints=list(ctx.endpoints),
            substrate_handles=list(ctx.handles),
            failure_reason=None,
        )
        self._events.emit(
            "deployment.active",
            ctx.deployment_id,
            endpoints=list(ctx.endpoints),
            replicas=len(ctx.handles),
        )

    # shared helpers for scaling and tenants

    async def validate_entries(self, deployment_id: str, entry_ids: list[str]) -> None:
        for entry_id in entry_ids:
            entry = self._registry.get(entry_id)
            if entry is None:
                raise HealthCheckFailure(f"registry entry {entry_id} disappeared during validation")
            outcome = await self._prober.probe_entry(entry)
            if not outcome.healthy:
                raise HealthCheckFailure(f"endpoint {entry.endpoint} failed health validation: {outcome.error}")

    def _provision_spec(
        self,
        deployment_id: str,
        engine_type: EngineType,
        spec: ResourceSpec,
        node: Node,
        config: EngineConfig,
        index: int,
        *,
        tenant_id: str | None = None,
    ) -> ProvisionSpec:
        labels = {"deployment_id": deployment_id, "replica": str(index)}
        if tenant_id is not None:
            labels["tenant_id"] = tenant_id
        return ProvisionSpec(
            deployment_id=deployment_id,
            engine_type=engine_type.value,
            image=config.image,
            node_id=node.id,
            cpu=spec.cpu,
            memory_mb=spec.memory_mb,
            storage_gb=spec.storage_gb,
            port=config.port + index,
            config_artifacts=dict(config.config_artifacts),
            init_script=config.init_script,
            env=dict(config.env),
            labels=labels,
        )

    async def _placement_for(self, record: DeploymentRecord) -> tuple[Node, EngineConfig]:
        node = self._nodes.get(record.node_id or "")
        if node is None:
            raise ConfigurationError(f"deployment {record.id} is placed on unknown node {record.node_id}")
        spec = ResourceSpec(cpu=record.cpu, memory_mb=record.memory_mb, storage_gb=record.storage_gb, replicas=record.replicas)
        config = await self._templates.generate_config(EngineType(record.engine_type), spec)
        return node, config

    async def add_replicas(
        self,
        record: DeploymentRecord,
        desired: int,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[list[str], list[str]]:
        # Provision, start, register and validate new replicas; undo only the new ones on failure.
        node, config = await self._placement_for(record)
        engine_type = EngineType(record.engine_type)
        spec = ResourceSpec(cpu=record.cpu, memory_mb=record.memory_mb, storage_gb=record.storage_gb, replicas=desired)
        policy = pipeline_retry_policy(self._settings, timeout_s=self._settings.pipeline_provision_timeout_s)
        self._nodes.resize(record.id, cpu=record.cpu * desired, memory_mb=record.memory_mb * desired)
        handles = list(record.substrate_handles or [])
        endpoints = list(record.endpoints or [])
        new_handles: list[str] = []
        new_entries: list[str] = []
        try:
            for index in range(len(handles), desired):
                if cancel_event is not None and cancel_event.is_set():
                    raise PipelineCancelledError(f"scaling of deployment {record.id} cancelled")
                handle = await retry_async(
                    lambda index=index: self._substrate.provision(
                        self._provision_spec(record.id, engine_type, spec, node, config, index)
                    ),
                    policy=policy,
                )
                new_handles.append(handle)
                await retry_async(lambda handle=handle: self._substrate.start(handle), policy=policy)
                endpoint = build_endpoint(config, node, index, tls=record.tls_enabled)
                entry = self._registry.register(record.id, endpoint, handle=handle)
                new_entries.append(entry.entry_id)
                endpoints.append(endpoint)
            await self.validate_entries(record.id, new_entries)
        except Exception:
            for entry_id in new_entries:
                self._registry.deregister(entry_id)
            self._remember_orphans(record.id, await self.release_handles(record.id, new_handles))
            self._nodes.resize(record.id, cpu=record.cpu * record.replicas, memory_mb=record.memory_mb * record.replicas)
            raise
        return handles + new_handles, endpoints

    async def remove_replicas(self, record: DeploymentRecord, desired: int) -> tuple[list[str], list[str]]:
        handles = list(record.substrate_handles or [])
        endpoints = list(record.endpoints or [])
        keep_handles, drop_handles = handles[:desired], handles[desired:]
        for entry in self._registry.entries(record.id, all_tenants=False):
            if entry.handle in drop_handles:
                self._registry.deregister(entry.entry_id)
        self._remember_orphans(record.id, await self.release_handles(record.id, drop_handles))
        self._nodes.resize(record.id, cpu=record.cpu * desired, memory_mb=record.memory_mb * desired)
        return keep_handles, endpoints[:desired]

    async def provision_tenant_instance(self, record: DeploymentRecord, tenant_id: str) -> tuple[str, str]:
        # Dedicated-instance tenants get their own substrate instance and a tenant-scoped entry.
        reservation_key = f"{record.id}:{tenant_id}"
        _, config = await self._placement_for(record)
        node = self._nodes.reserve(reservation_key, cpu=record.cpu, memory_mb=record.memory_mb)
        spec = ResourceSpec(cpu=record.cpu, memory_mb=record.memory_mb, storage_gb=record.storage_gb, replicas=1)
        policy = pipeline_retry_policy(self._settings, timeout_s=self._settings.pipeline_provision_timeout_s)
        handle: str | None = None
        entry_id: str | None = None
        try:
            handle = await retry_async(
                lambda: self._substrate.provision(
                    self._provision_spec(record.id, EngineType(record.engine_type), spec, node, config, 0, tenant_id=tenant_id)
                ),
                policy=policy,
            )
            await retry_async(lambda: self._substrate.start(handle), policy=policy)
            endpoint = build_endpoint(config, node, 0, tls=record.tls_enabled)
            entry = self._registry.register(record.id, endpoint, tenant_id=tenant_id, handle=handle)
            entry_id = entry.entry_id
            await self.validate_entries(record.id, [entry_id])
        except Exception:
            if entry_id is not None:
                self._registry.deregister(entry_id)
            if handle is not None:
                self._remember_orphans(record.id, await self.release_handles(record.id, [handle]))
            self._nodes.release(reservation_key)
            raise
        logger.info("tenant_instance_provisioned deployment_id=%s tenant_id=%s handle=%s", record.id, tenant_id, handle)
        return handle, endpoint

    async def destroy_tenant_instance(self, deployment_id: str, tenant_id: str, handle: str | None) -> list[str]:
        self._registry.deregister_deployment(deployment_id, tenant_id=tenant_id, all_tenants=False)
        remaining = await self.release_handles(deployment_id, [handle] if handle else [])
        self._remember_orphans(deployment_id, remaining)
        self._nodes.release(f"{deployment_id}:{tenant_id}")
        return remaining

    async def teardown(self, record: DeploymentRecord, tenant_handles: dict[str, str]) -> list[str]:
        # Decommission path: same release order as rollback, covering tenant instances too.
        self._registry.deregister_deployment(record.id)
        self._snapshots.forget(record.id)
        self._credentials.revoke(record.id)
        remaining: list[str] = []
        for tenant_id, handle in tenant_handles.items():
            remaining.extend(await self.release_handles(record.id, [handle]))
            self._nodes.release(f"{record.id}:{tenant_id}")
        remaining.extend(await self.release_handles(record.id, list(record.substrate_handles or [])))
        self._nodes.release(record.id)
        return remaining


def build_network_policy(settings: Settings, config: EngineConfig, replicas: int, *, tls: bool) -> dict[str, object]:
    cidrs: list[str] = []
    for raw in settings.network_allowed_cidrs.split(","):
        raw = raw.strip()
        if not raw:
            continue
        try:
            cidrs.append(str(ipaddress.ip_network(raw, strict=False)))
        except ValueError as exc:
            raise ConfigurationError(f"invalid allowed CIDR {raw!r}") from exc
    if not cidrs:
        raise ConfigurationError("network policy requires at least one allowed CIDR")
    return {
        "ingress": [
            {"cidr": cidr, "ports": [config.port + index for index in range(replicas)]} for cidr in cidrs
        ],
        "egress": "deny",
        "tls": {"enabled": tls, "min_version": "TLSv1.2"} if tls else {"enabled": False},
    }


def _require_placement(ctx: PipelineContext) -> tuple[Node, EngineConfig]:
    if ctx.node is None or ctx.config is None:
        raise ConfigurationError(f"deployment {ctx.deployment_id} reached provisioning without placement")
    return ctx.node, ctx.config


def _health_retryable(exc: Exception) -> bool:
    return isinstance(exc, HealthCheckFailure) or is_transient(exc)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


_STAGES: tuple[_Stage, ...] = (
    _Stage("quota_validation", None, Deployer._stage_quota),
    _Stage("node_selection", DeploymentState.PROVISIONING, Deployer._stage_node_selection),
    _Stage("config_generation", None, Deployer._stage_config),
    _Stage("provisioning", None, Deployer._stage_provision, timeout_attr="pipeline_provision_timeout_s"),
    _Stage("network_policy", DeploymentState.CONFIGURING, Deployer._stage_network),
    _Stage("security_setup", None, Deployer._stage_security),
    _Stage("monitoring_hookup", None, Deployer._stage_monitoring),
    _Stage("registry_registration", DeploymentState.REGISTERING, Deployer._stage_registration),
    _Stage("health_validation", DeploymentState.HEALTH_VALIDATING, Deployer._stage_health, retry_health=True),
    _Stage("finalization", None, Deployer._stage_finalize),
)

STAGE_NAMES: tuple[str, ...] = tuple(stage.name for stage in _STAGES)
