from __future__ import annotations

import asyncio

import pytest

from nexusdb.core.errors import (
    ConfigurationError,
    HealthCheckFailure,
    PipelineCancelledError,
    QuotaExceededError,
    ScalingConflictError,
    ScalingPolicyViolationError,
    ValidationError,
)
from nexusdb.domain.state import DeploymentState
from nexusdb.services.telemetry import ResourceUtilization
from nexusdb.tests.utils.deployments import deploy_active


POLICY = {"min_replicas": 1, "max_replicas": 5, "cooldown_seconds": 0, "cpu_up": 80.0, "cpu_down": 20.0}


@pytest.mark.asyncio
async def test_scale_beyond_policy_max_is_rejected(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    await orchestrator.set_scaling_policy(record.id, POLICY)
    with pytest.raises(ScalingPolicyViolationError):
        await orchestrator.scale(record.id, 10)
    current = await orchestrator.get_deployment(record.id)
    assert current.replicas == 1
    assert current.state == DeploymentState.ACTIVE.value
    history = await orchestrator.get_scaling_history(record.id)
    assert [(event.to_replicas, event.outcome) for event in history] == [(10, "rejected")]


@pytest.mark.asyncio
async def test_scale_up_then_down(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)

    result = await orchestrator.scale(record.id, 3)
    assert (result.previous_replicas, result.current_replicas) == (1, 3)
    assert result.endpoints == [
        "postgresql://127.0.0.1:5432/app",
        "postgresql://127.0.0.1:5433/app",
        "postgresql://127.0.0.1:5434/app",
    ]
    scaled = await orchestrator.get_deployment(record.id)
    assert scaled.replicas == 3
    assert scaled.substrate_handles == ["fake-0001", "fake-0002", "fake-0003"]
    assert len(runtime.registry.entries(record.id)) == 3
    assert runtime.nodes.reservation(record.id).cpu == 3.0

    await orchestrator.scale(record.id, 1)
    shrunk = await orchestrator.get_deployment(record.id)
    assert shrunk.replicas == 1
    assert shrunk.endpoints == ["postgresql://127.0.0.1:5432/app"]
    assert substrate.allocated_handles() == ["fake-0001"]
    assert len(runtime.registry.entries(record.id)) == 1

    transitions = await orchestrator.list_transitions(record.id)
    assert transitions[-4:] == [
        ("active", "scaling"),
        ("scaling", "active"),
        ("active", "scaling"),
        ("scaling", "active"),
    ]
    outcomes = [(event.from_replicas, event.to_replicas, event.outcome) for event in await orchestrator.get_scaling_history(record.id)]
    assert sorted(outcomes) == [(1, 3, "succeeded"), (3, 1, "succeeded")]
    assert len(runtime.events.history(deployment_id=record.id, event_type="deployment.scaled")) == 2


@pytest.mark.asyncio
async def test_scale_to_same_count_is_noop(runtime, substrate) -> None:
    record = await deploy_active(runtime.orchestrator)
    calls_before = len(substrate.calls)
    result = await runtime.orchestrator.scale(record.id, 1)
    assert result.current_replicas == 1
    assert len(substrate.calls) == calls_before
    assert await runtime.orchestrator.get_scaling_history(record.id) == []


@pytest.mark.asyncio
async def test_concurrent_scale_is_rejected(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    substrate.set_delay("provision", 0.2)
    first = asyncio.create_task(orchestrator.scale(record.id, 2))
    await asyncio.sleep(0.05)
    assert orchestrator.is_busy(record.id)
    with pytest.raises(ScalingConflictError):
        await orchestrator.scale(record.id, 3)
    with pytest.raises(ScalingConflictError):
        await orchestrator.decommission(record.id)
    assert (await first).current_replicas == 2


@pytest.mark.asyncio
async def test_waiting_scale_queues_behind_running_one(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    substrate.set_delay("provision", 0.1)
    first = asyncio.create_task(orchestrator.scale(record.id, 2))
    await asyncio.sleep(0.02)
    second = await orchestrator.scale(record.id, 3, wait=True)
    assert (await first).current_replicas == 2
    assert (second.previous_replicas, second.current_replicas) == (2, 3)


@pytest.mark.asyncio
async def test_failed_scale_keeps_serving_old_replicas(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    substrate.fail_next("provision", ConfigurationError("node rejected instance"))
    with pytest.raises(ConfigurationError):
        await orchestrator.scale(record.id, 2)
    current = await orchestrator.get_deployment(record.id)
    assert current.state == DeploymentState.ACTIVE.value
    assert current.replicas == 1
    assert current.endpoints == ["postgresql://127.0.0.1:5432/app"]
    assert substrate.allocated_handles() == ["fake-0001"]
    assert len(runtime.registry.entries(record.id)) == 1
    assert runtime.nodes.reservation(record.id).cpu == 1.0
    history = await orchestrator.get_scaling_history(record.id)
    assert [event.outcome for event in history] == ["failed"]


@pytest.mark.asyncio
async def test_unhealthy_new_replica_is_rolled_back(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    substrate.fail_next("get_metrics", ConnectionError("replica never came up"))
    with pytest.raises(HealthCheckFailure):
        await orchestrator.scale(record.id, 2)
    current = await orchestrator.get_deployment(record.id)
    assert current.replicas == 1
    assert substrate.allocated_handles() == ["fake-0001"]


@pytest.mark.asyncio
async def test_scaling_can_be_cancelled(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    substrate.set_delay("provision", 0.3)
    task = asyncio.create_task(orchestrator.scale(record.id, 4))
    await asyncio.sleep(0.15)
    assert await orchestrator.cancel_deployment(record.id) is True
    with pytest.raises(PipelineCancelledError):
        await task
    current = await orchestrator.get_deployment(record.id)
    assert current.state == DeploymentState.ACTIVE.value
    assert current.replicas == 1
    assert substrate.allocated_handles() == ["fake-0001"]


@pytest.mark.asyncio
async def test_scale_respects_user_cpu_total(runtime, settings) -> None:
    settings.quota_user_cpu_total = 2.0
    record = await deploy_active(runtime.orchestrator)
    with pytest.raises(QuotaExceededError):
        await runtime.orchestrator.scale(record.id, 3)
    assert (await runtime.orchestrator.get_deployment(record.id)).state == DeploymentState.ACTIVE.value


@pytest.mark.asyncio
async def test_new_policy_clamps_current_replicas(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    policy = await orchestrator.set_scaling_policy(record.id, {"min_replicas": 2, "max_replicas": 4})
    assert policy.cooldown_seconds == 300
    current = await orchestrator.get_deployment(record.id)
    assert current.replicas == 2
    history = await orchestrator.get_scaling_history(record.id)
    assert history[0].trigger == "policy"


@pytest.mark.asyncio
async def test_invalid_policies_are_rejected(runtime, settings) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    with pytest.raises(ValidationError):
        await orchestrator.set_scaling_policy(record.id, {"min_replicas": 3, "max_replicas": 2})
    with pytest.raises(ValidationError):
        await orchestrator.set_scaling_policy(record.id, {"min_replicas": 1, "max_replicas": settings.quota_max_replicas + 1})
    with pytest.raises(ValidationError):
        await orchestrator.set_scaling_policy(
            record.id, {"min_replicas": 1, "max_replicas": 2, "cpu_up": 50.0, "cpu_down": 60.0}
        )
    assert await orchestrator.get_scaling_policy(record.id) is None


@pytest.mark.asyncio
async def test_reactive_autoscaling_follows_utilization(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    await orchestrator.set_scaling_policy(record.id, POLICY)

    substrate.set_default_metrics(ResourceUtilization(cpu=95.0, memory=40.0))
    decision = await orchestrator.evaluate_autoscaling(record.id, wait=True)
    assert decision.action == "scale_up"
    assert (await orchestrator.get_deployment(record.id)).replicas == 2

    substrate.set_default_metrics(ResourceUtilization(cpu=50.0, memory=40.0))
    steady = await orchestrator.evaluate_autoscaling(record.id)
    assert steady.action == "none"

    substrate.set_default_metrics(ResourceUtilization(cpu=5.0, memory=40.0))
    down = await orchestrator.evaluate_autoscaling(record.id)
    assert down.action == "scale_down"
    assert (await orchestrator.get_deployment(record.id)).replicas == 1
    triggers = {event.trigger for event in await orchestrator.get_scaling_history(record.id)}
    assert triggers == {"reactive"}


@pytest.mark.asyncio
async def test_autoscaling_honours_cooldown(runtime, substrate, clock) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    await orchestrator.set_scaling_policy(record.id, dict(POLICY, cooldown_seconds=300))
    substrate.set_default_metrics(ResourceUtilization(cpu=95.0))
    assert (await orchestrator.evaluate_autoscaling(record.id)).action == "scale_up"
    assert (await orchestrator.evaluate_autoscaling(record.id)).reason == "cooldown"
    clock.advance(seconds=301)
    assert (await orchestrator.evaluate_autoscaling(record.id)).action == "scale_up"
    assert (await orchestrator.get_deployment(record.id)).replicas == 3


@pytest.mark.asyncio
async def test_autoscaling_without_policy_or_metrics_does_nothing(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    assert (await orchestrator.evaluate_autoscaling(record.id)).reason == "no scaling policy"
    await orchestrator.set_scaling_policy(record.id, POLICY)
    substrate.set_unreachable("fake-0001")
    assert (await orchestrator.evaluate_autoscaling(record.id)).reason == "metrics unavailable"
