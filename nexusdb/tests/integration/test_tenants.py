from __future__ import annotations

import asyncio

import pytest

from nexusdb.core.errors import (
    ConfigurationError,
    InvalidStateTransitionError,
    NotFoundError,
    QuotaExceededError,
    ScalingConflictError,
    TenantConflictError,
    ValidationError,
)
from nexusdb.domain.state import IsolationMode
from nexusdb.tests.utils.deployments import decommission_settled, deploy_active


@pytest.mark.asyncio
async def test_duplicate_isolation_key_is_rejected(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    tenant = await orchestrator.create_tenant(record.id, "tenant_a", quota=100)
    with pytest.raises(TenantConflictError):
        await orchestrator.create_tenant(record.id, "tenant_a", quota=50)
    tenants = await orchestrator.list_tenants(record.id)
    assert [item.id for item in tenants] == [tenant.id]
    assert tenants[0].quota == 100
    # Same key is fine on another deployment.
    other = await deploy_active(orchestrator)
    await orchestrator.create_tenant(other.id, "tenant_a", quota=10)


@pytest.mark.asyncio
async def test_schema_tenant_resolves_to_shared_endpoint(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    tenant = await orchestrator.create_tenant(record.id, "tenant_a", quota=100)
    connection = await orchestrator.resolve_tenant_connection(tenant.id)
    assert connection.isolation_mode == IsolationMode.SCHEMA
    assert connection.connection_string == "postgresql://127.0.0.1:5432/app?schema=tenant_a"
    assert connection.routing_hints == {"schema": "tenant_a"}
    # Shared-instance tenants add no registry entries of their own.
    assert len(runtime.registry.entries(record.id)) == 1
    assert runtime.events.history(deployment_id=record.id, event_type="tenant.created")


@pytest.mark.asyncio
async def test_key_prefix_tenant_routing_hint(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(
        orchestrator,
        engine_type="key_value",
        tenant_isolation_mode="key_prefix",
        resource_spec={"cpu": 1, "memory_mb": 256},
    )
    tenant = await orchestrator.create_tenant(record.id, "acme", quota=5)
    connection = await orchestrator.resolve_tenant_connection(tenant.id)
    assert connection.connection_string == "redis://127.0.0.1:6379/0"
    assert connection.routing_hints == {"key_prefix": "acme:"}


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["Tenant-A", "1tenant", "", "a" * 64])
async def test_schema_keys_must_be_identifiers(runtime, key: str) -> None:
    record = await deploy_active(runtime.orchestrator)
    with pytest.raises(ValidationError):
        await runtime.orchestrator.create_tenant(record.id, key, quota=1)


@pytest.mark.asyncio
async def test_tenant_quota_limits(runtime, settings) -> None:
    settings.tenant_quota_max = 100
    record = await deploy_active(runtime.orchestrator)
    with pytest.raises(ValidationError):
        await runtime.orchestrator.create_tenant(record.id, "tenant_a", quota=0)
    with pytest.raises(QuotaExceededError):
        await runtime.orchestrator.create_tenant(record.id, "tenant_a", quota=101)


@pytest.mark.asyncio
async def test_dedicated_tenant_gets_own_instance(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator, tenant_isolation_mode="dedicated_instance")
    tenant = await orchestrator.create_tenant(record.id, "acme", quota=10)

    assert tenant.substrate_handle == "fake-0002"
    assert substrate.is_running("fake-0002")
    tenant_entries = [entry for entry in runtime.registry.entries(record.id) if entry.tenant_id == tenant.id]
    assert len(tenant_entries) == 1
    assert runtime.nodes.reservation(f"{record.id}:{tenant.id}") is not None

    connection = await orchestrator.resolve_tenant_connection(tenant.id)
    assert connection.routing_hints == {"instance": "acme"}
    decision = orchestrator.route(record.id, tenant_id=tenant.id)
    assert decision.tenant_id == tenant.id

    await orchestrator.remove_tenant(tenant.id)
    assert substrate.allocated_handles() == ["fake-0001"]
    assert [entry.tenant_id for entry in runtime.registry.entries(record.id)] == [None]
    assert runtime.nodes.reservation(f"{record.id}:{tenant.id}") is None
    with pytest.raises(NotFoundError):
        await orchestrator.remove_tenant(tenant.id)


@pytest.mark.asyncio
async def test_failed_dedicated_instance_leaves_nothing_behind(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator, tenant_isolation_mode="dedicated_instance")
    substrate.fail_next("start", ConfigurationError("runtime refused to start instance"))
    with pytest.raises(ConfigurationError):
        await orchestrator.create_tenant(record.id, "acme", quota=10)
    assert await orchestrator.list_tenants(record.id) == []
    assert substrate.allocated_handles() == ["fake-0001"]
    assert len(runtime.registry.entries(record.id)) == 1


@pytest.mark.asyncio
async def test_decommission_releases_dedicated_tenant_instances(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator, tenant_isolation_mode="dedicated_instance")
    await orchestrator.create_tenant(record.id, "acme", quota=10)
    await orchestrator.create_tenant(record.id, "globex", quota=10)
    assert len(substrate.allocated_handles()) == 3

    destroyed = await decommission_settled(orchestrator, record.id)
    assert destroyed.state == "destroyed"
    assert substrate.allocated_handles() == []
    assert runtime.registry.entries(record.id) == []
    assert runtime.nodes.free_capacity()["node-local"] == (16.0, 65536)


@pytest.mark.asyncio
async def test_decommission_waits_for_tenant_creation(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator, tenant_isolation_mode="dedicated_instance")
    substrate.set_delay("provision", 0.2)
    creating = asyncio.create_task(orchestrator.create_tenant(record.id, "acme", quota=10))
    await asyncio.sleep(0.05)

    with pytest.raises(ScalingConflictError):
        await orchestrator.decommission(record.id)
    destroyed = await decommission_settled(orchestrator, record.id)

    tenant = await creating
    assert tenant.substrate_handle == "fake-0002"
    assert destroyed.state == "destroyed"
    assert substrate.allocated_handles() == []
    assert runtime.nodes.free_capacity()["node-local"] == (16.0, 65536)


@pytest.mark.asyncio
async def test_tenant_creation_rechecks_state_after_queueing(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator, tenant_isolation_mode="dedicated_instance")
    substrate.set_delay("stop", 0.2)
    await orchestrator.decommission(record.id)
    with pytest.raises(InvalidStateTransitionError):
        await orchestrator.create_tenant(record.id, "acme", quota=10, wait=True)
    await orchestrator.wait_for_idle(timeout=10)
    assert substrate.allocated_handles() == []
    assert await orchestrator.list_tenants(record.id) == []


@pytest.mark.asyncio
async def test_tenants_need_a_serving_deployment(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    await decommission_settled(orchestrator, record.id)
    with pytest.raises(InvalidStateTransitionError):
        await orchestrator.create_tenant(record.id, "tenant_a", quota=1)
    with pytest.raises(NotFoundError):
        await orchestrator.create_tenant("missing", "tenant_a", quota=1)
    with pytest.raises(NotFoundError):
        await orchestrator.resolve_tenant_connection("missing")
