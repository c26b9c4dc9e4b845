from __future__ import annotations

from typing import Any

from nexusdb.domain.models import DeploymentRecord
from nexusdb.services.orchestrator import Orchestrator


def deploy_payload(**overrides: Any) -> dict[str, Any]:
    # Smallest request that passes template and quota checks for a relational engine.
    payload: dict[str, Any] = {
        "user_id": "user-1",
        "engine_type": "relational",
        "environment": "dev",
        "resource_spec": {"cpu": 1, "memory_mb": 2048, "storage_gb": 10, "replicas": 1},
        "tenant_isolation_mode": "schema",
    }
    payload.update(overrides)
    return payload


async def deploy_settled(orchestrator: Orchestrator, **overrides: Any) -> DeploymentRecord:
    record = await orchestrator.deploy(deploy_payload(**overrides))
    await orchestrator.wait_for_idle(timeout=10)
    return await orchestrator.get_deployment(record.id)


async def deploy_active(orchestrator: Orchestrator, **overrides: Any) -> DeploymentRecord:
    record = await deploy_settled(orchestrator, **overrides)
    assert record.state == "active", record.failure_reason
    return record


async def decommission_settled(orchestrator: Orchestrator, deployment_id: str) -> DeploymentRecord:
    await orchestrator.decommission(deployment_id, wait=True)
    await orchestrator.wait_for_idle(timeout=10)
    return await orchestrator.get_deployment(deployment_id)
