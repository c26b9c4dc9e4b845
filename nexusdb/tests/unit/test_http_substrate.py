from __future__ import annotations

import json

import httpx
import pytest

from nexusdb.core.config import Settings
from nexusdb.core.errors import ConfigurationError, ProvisioningError
from nexusdb.providers.substrate.base import ProvisionSpec
from nexusdb.providers.substrate.http import HttpSubstrate


SPEC = ProvisionSpec(
    deployment_id="dep-1",
    engine_type="relational",
    image="docker.io/library/postgres:16-alpine",
    node_id="node-local",
    cpu=1.0,
    memory_mb=512,
    storage_gb=10,
    port=5432,
)


def _substrate(handler) -> HttpSubstrate:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://agent")
    return HttpSubstrate(Settings(_env_file=None), client=client)


@pytest.mark.asyncio
async def test_provision_posts_spec_and_returns_handle() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"handle": "inst-42"})

    substrate = _substrate(handler)
    assert await substrate.provision(SPEC) == "inst-42"
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/v1/instances"
    assert json.loads(seen[0].content)["deployment_id"] == "dep-1"


@pytest.mark.asyncio
async def test_metrics_are_parsed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/instances/inst-1/metrics"
        return httpx.Response(200, json={"cpu": 42.5, "memory": 10, "connections": 3})

    metrics = await _substrate(handler).get_metrics("inst-1")
    assert metrics.cpu == 42.5
    assert metrics.memory == 10.0
    assert metrics.disk_io == 0.0
    assert metrics.connections == 3


@pytest.mark.asyncio
async def test_server_errors_and_network_failures_are_retryable() -> None:
    def unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProvisioningError):
        await _substrate(unavailable).start("inst-1")
    with pytest.raises(ProvisioningError):
        await _substrate(unreachable).stop("inst-1")


@pytest.mark.asyncio
async def test_client_errors_are_configuration_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, text="memory below image minimum")

    with pytest.raises(ConfigurationError):
        await _substrate(handler).provision(SPEC)


@pytest.mark.asyncio
async def test_missing_handle_is_provisioning_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    with pytest.raises(ProvisioningError):
        await _substrate(handler).provision(SPEC)


@pytest.mark.asyncio
async def test_destroy_of_missing_instance_is_idempotent() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(404)

    await _substrate(handler).destroy("inst-gone")
