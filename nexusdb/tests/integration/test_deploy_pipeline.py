from __future__ import annotations

import asyncio

import pytest

from nexusdb.core.errors import (
    ConfigurationError,
    InvalidStateTransitionError,
    NotFoundError,
    ProvisioningError,
    QuotaExceededError,
    ScalingConflictError,
    ValidationError,
)
from nexusdb.domain.state import DeploymentState, HealthStatus
from nexusdb.services.deployer import STAGE_NAMES
from nexusdb.tests.utils.deployments import deploy_active, deploy_payload, deploy_settled


PIPELINE_TRANSITIONS = [
    ("requested", "quota_validated"),
    ("quota_validated", "provisioning"),
    ("provisioning", "configuring"),
    ("configuring", "registering"),
    ("registering", "health_validating"),
    ("health_validating", "active"),
]


@pytest.mark.asyncio
async def test_relational_deploy_reaches_active_with_one_entry(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)

    entries = runtime.registry.entries(record.id)
    assert len(entries) == 1
    assert entries[0].health_status == HealthStatus.HEALTHY
    assert await orchestrator.list_tenants(record.id) == []
    assert record.endpoints == ["postgresql://127.0.0.1:5432/app"]
    assert record.substrate_handles == ["fake-0001"]
    assert substrate.is_running("fake-0001")
    assert record.node_id == "node-local"
    assert record.db_username == f"app_{record.id[:12]}"
    assert record.network_policy_json["egress"] == "deny"
    assert record.config_digest
    assert await orchestrator.list_transitions(record.id) == PIPELINE_TRANSITIONS

    progress = await orchestrator.get_deployment_progress(record.id)
    assert progress.percent_complete == 100.0
    assert [stage.name for stage in progress.stages] == list(STAGE_NAMES)
    assert runtime.events.history(deployment_id=record.id, event_type="deployment.active")


@pytest.mark.asyncio
async def test_key_value_deploy_with_tls_and_replicas(runtime) -> None:
    record = await deploy_active(
        runtime.orchestrator,
        engine_type="key_value",
        tenant_isolation_mode="key_prefix",
        tls_enabled=True,
        resource_spec={"cpu": 0.5, "memory_mb": 256, "replicas": 2},
    )
    assert record.endpoints == ["rediss://127.0.0.1:6379/0", "rediss://127.0.0.1:6380/0"]
    assert len(runtime.registry.entries(record.id)) == 2
    assert record.network_policy_json["tls"]["enabled"] is True


@pytest.mark.asyncio
async def test_provisioning_failure_rolls_back_everything(runtime, substrate) -> None:
    # Instance gets allocated, then start is rejected outright.
    substrate.fail_next("start", ConfigurationError("image rejected by runtime"))
    record = await deploy_settled(runtime.orchestrator)

    assert record.state == DeploymentState.FAILED.value
    assert record.failed_stage == "provisioning"
    assert "image rejected" in record.failure_reason
    assert record.endpoints == []
    assert record.substrate_handles == []
    assert runtime.registry.entries(record.id) == []
    assert substrate.allocated_handles() == []
    assert runtime.nodes.reservation(record.id) is None

    progress = await runtime.orchestrator.get_deployment_progress(record.id)
    statuses = {stage.name: stage.status for stage in progress.stages}
    assert statuses["provisioning"] == "failed"
    assert statuses["finalization"] == "skipped"
    assert runtime.events.history(deployment_id=record.id, event_type="deployment.failed")


@pytest.mark.asyncio
async def test_transient_provisioning_errors_are_retried(runtime, substrate) -> None:
    substrate.fail_next("provision", ProvisioningError("agent busy"), times=2)
    record = await deploy_active(runtime.orchestrator)
    progress = await runtime.orchestrator.get_deployment_progress(record.id)
    provisioning = next(stage for stage in progress.stages if stage.name == "provisioning")
    assert provisioning.attempts == 3
    assert substrate.allocated_handles() == ["fake-0001"]


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_deployment(runtime, substrate) -> None:
    substrate.fail_next("provision", ProvisioningError("agent down"), times=3)
    record = await deploy_settled(runtime.orchestrator)
    assert record.state == DeploymentState.FAILED.value
    assert record.failed_stage == "provisioning"
    assert substrate.allocated_handles() == []


@pytest.mark.asyncio
async def test_health_validation_failure_rolls_back(runtime, substrate) -> None:
    substrate.fail_next("get_metrics", ConnectionError("probe refused"), times=3)
    record = await deploy_settled(runtime.orchestrator)
    assert record.state == DeploymentState.FAILED.value
    assert record.failed_stage == "health_validation"
    assert runtime.registry.entries(record.id) == []
    assert substrate.allocated_handles() == []


@pytest.mark.asyncio
async def test_undersized_spec_fails_at_config_generation(runtime, substrate) -> None:
    record = await deploy_settled(runtime.orchestrator, resource_spec={"cpu": 1, "memory_mb": 128})
    assert record.state == DeploymentState.FAILED.value
    assert record.failed_stage == "config_generation"
    assert substrate.calls == []


@pytest.mark.asyncio
async def test_cancel_is_observed_at_stage_boundary(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    substrate.set_delay("provision", 0.2)
    record = await orchestrator.deploy(deploy_payload())
    await asyncio.sleep(0.05)
    assert await orchestrator.cancel_deployment(record.id) is True
    await orchestrator.wait_for_idle(timeout=10)

    failed = await orchestrator.get_deployment(record.id)
    assert failed.state == DeploymentState.FAILED.value
    assert "PipelineCancelledError" in failed.failure_reason
    assert substrate.allocated_handles() == []
    assert await orchestrator.cancel_deployment(record.id) is False


@pytest.mark.asyncio
async def test_aggregate_timeout_fails_pipeline(runtime, substrate, settings) -> None:
    settings.pipeline_timeout_s = 0.2
    substrate.set_delay("start", 0.5)
    record = await deploy_settled(runtime.orchestrator)
    assert record.state == DeploymentState.FAILED.value
    assert "PipelineTimeoutError" in record.failure_reason
    assert substrate.allocated_handles() == []


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected_before_admission(runtime) -> None:
    orchestrator = runtime.orchestrator
    with pytest.raises(ValidationError):
        await orchestrator.deploy(deploy_payload(resource_spec={"cpu": 0, "memory_mb": 512}))
    with pytest.raises(ValidationError):
        await orchestrator.deploy(deploy_payload(tenant_isolation_mode="key_prefix"))
    with pytest.raises(QuotaExceededError):
        await orchestrator.deploy(deploy_payload(resource_spec={"cpu": 64, "memory_mb": 512}))
    assert await orchestrator.list_deployments() == []


@pytest.mark.asyncio
async def test_per_user_deployment_quota(runtime, settings) -> None:
    settings.quota_max_deployments_per_user = 2
    orchestrator = runtime.orchestrator
    await deploy_active(orchestrator)
    await deploy_active(orchestrator)
    with pytest.raises(QuotaExceededError):
        await orchestrator.deploy(deploy_payload())
    # Other users are unaffected.
    await deploy_active(orchestrator, user_id="user-2")


@pytest.mark.asyncio
async def test_concurrent_deploys_cannot_share_last_quota_slot(runtime, settings) -> None:
    settings.quota_max_deployments_per_user = 1
    orchestrator = runtime.orchestrator
    results = await asyncio.gather(
        orchestrator.deploy(deploy_payload()),
        orchestrator.deploy(deploy_payload()),
        return_exceptions=True,
    )
    await orchestrator.wait_for_idle(timeout=10)
    assert sum(isinstance(result, QuotaExceededError) for result in results) == 1


@pytest.mark.asyncio
async def test_mutations_conflict_while_pipeline_runs(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    substrate.set_delay("provision", 0.2)
    record = await orchestrator.deploy(deploy_payload())
    await asyncio.sleep(0.05)
    assert orchestrator.is_busy(record.id)
    with pytest.raises(ScalingConflictError):
        await orchestrator.decommission(record.id)
    await orchestrator.wait_for_idle(timeout=10)
    assert (await orchestrator.get_deployment(record.id)).state == DeploymentState.ACTIVE.value


@pytest.mark.asyncio
async def test_terminal_records_reject_transitions(runtime, substrate) -> None:
    substrate.fail_next("provision", ConfigurationError("no such image"))
    record = await deploy_settled(runtime.orchestrator)
    with pytest.raises(InvalidStateTransitionError):
        await runtime.orchestrator.decommission(record.id)
    with pytest.raises(InvalidStateTransitionError):
        await runtime.orchestrator.scale(record.id, 2)


@pytest.mark.asyncio
async def test_unknown_deployment_is_not_found(runtime) -> None:
    with pytest.raises(NotFoundError):
        await runtime.orchestrator.get_deployment("missing")
    with pytest.raises(NotFoundError):
        await runtime.orchestrator.cancel_deployment("missing")


@pytest.mark.asyncio
async def test_dev_deployments_inherit_default_ttl(runtime, settings) -> None:
    settings.dev_default_ttl_s = 3600
    dev = await deploy_active(runtime.orchestrator)
    prod = await deploy_active(runtime.orchestrator, environment="prod")
    explicit = await deploy_active(runtime.orchestrator, environment="staging", ttl_seconds=60)
    assert dev.expires_at is not None
    assert prod.expires_at is None
    assert explicit.expires_at is not None
