from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from nexusdb.core.clock import TimeProvider
from nexusdb.core.config import Settings
from nexusdb.core.errors import ConfigurationError
from nexusdb.persistence.db import SessionFactory, build_engine, build_session_factory, create_schema
from nexusdb.providers.substrate.base import ExecutionSubstrate
from nexusdb.providers.substrate.fake import FakeSubstrate
from nexusdb.providers.substrate.http import HttpSubstrate
from nexusdb.providers.templates import DefaultTemplateProvider, EngineTemplateProvider
from nexusdb.services.backup import BackupExecutor, BackupStorage
from nexusdb.services.capacity import NodePool
from nexusdb.services.credentials import CredentialVault
from nexusdb.services.deployer import Deployer
from nexusdb.services.events import EventBus
from nexusdb.services.health import HealthProber
from nexusdb.services.lifecycle import DeploymentLifecycle
from nexusdb.services.orchestrator import Orchestrator
from nexusdb.services.quota import QuotaService
from nexusdb.services.registry import Registry
from nexusdb.services.resilience import circuit_breaker_config
from nexusdb.services.scheduler import Scheduler
from nexusdb.services.telemetry import HealthSnapshotStore


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    sessions: SessionFactory
    events: EventBus
    substrate: ExecutionSubstrate
    nodes: NodePool
    registry: Registry
    snapshots: HealthSnapshotStore
    prober: HealthProber
    deployer: Deployer
    backups: BackupExecutor
    orchestrator: Orchestrator
    scheduler: Scheduler

    async def close(self) -> None:
        self.prober.stop()
        self.scheduler.stop()
        self.scheduler.close()
        await self.orchestrator.shutdown()
        if isinstance(self.substrate, HttpSubstrate):
            await self.substrate.aclose()
        await self.engine.dispose()


def build_substrate(settings: Settings) -> ExecutionSubstrate:
    backend = settings.substrate_backend.lower()
    if backend == "http":
        return HttpSubstrate(settings)
    if backend == "fake":
        return FakeSubstrate()
    raise ConfigurationError(f"unknown substrate backend {settings.substrate_backend!r}")


def build_runtime(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    substrate: ExecutionSubstrate | None = None,
    templates: EngineTemplateProvider | None = None,
    storage: BackupStorage | None = None,
    time_provider: TimeProvider | None = None,
) -> Runtime:
    # Wire one isolated control plane; tests build as many as they like.
    engine = engine or build_engine(settings)
    sessions = build_session_factory(engine)
    substrate = substrate or build_substrate(settings)
    events = EventBus()
    snapshots = HealthSnapshotStore(retention_s=settings.health_snapshot_retention_s, time_provider=time_provider)
    registry = Registry(
        circuit_breaker_config(settings),
        events=events,
        default_strategy=settings.registry_default_strategy,
    )
    prober = HealthProber(
        registry=registry,
        substrate=substrate,
        snapshots=snapshots,
        probe_timeout_ms=settings.probe_timeout_ms,
        time_provider=time_provider,
    )
    lifecycle = DeploymentLifecycle(events, time_provider=time_provider)
    quota = QuotaService(settings)
    nodes = NodePool.from_settings(settings)
    deployer = Deployer(
        settings=settings,
        sessions=sessions,
        lifecycle=lifecycle,
        events=events,
        quota=quota,
        nodes=nodes,
        templates=templates or DefaultTemplateProvider(),
        substrate=substrate,
        registry=registry,
        prober=prober,
        snapshots=snapshots,
        credentials=CredentialVault(settings),
        time_provider=time_provider,
    )
    backups = BackupExecutor(
        settings=settings,
        sessions=sessions,
        substrate=substrate,
        events=events,
        storage=storage,
        time_provider=time_provider,
    )
    orchestrator = Orchestrator(
        settings=settings,
        sessions=sessions,
        events=events,
        lifecycle=lifecycle,
        deployer=deployer,
        registry=registry,
        backups=backups,
        quota=quota,
        substrate=substrate,
        snapshots=snapshots,
        time_provider=time_provider,
    )
    scheduler = Scheduler(
        settings=settings,
        sessions=sessions,
        orchestrator=orchestrator,
        events=events,
        snapshots=snapshots,
        time_provider=time_provider,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        sessions=sessions,
        events=events,
        substrate=substrate,
        nodes=nodes,
        registry=registry,
        snapshots=snapshots,
        prober=prober,
        deployer=deployer,
        backups=backups,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


async def start_runtime(
    settings: Settings,
    *,
    bootstrap_schema: bool = False,
    recover: bool = True,
    **overrides,
) -> Runtime:
    runtime = build_runtime(settings, **overrides)
    if bootstrap_schema:
        await create_schema(runtime.engine)
    if recover:
        # Only the process that owns pipelines may fail interrupted ones.
        await runtime.orchestrator.recover()
    logger.info("runtime_started database=%s substrate=%s", settings.database_url.split("@")[-1], type(runtime.substrate).__name__)
    return runtime
