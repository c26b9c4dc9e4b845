from __future__ import annotations

import pytest

from nexusdb.core.config import Settings
from nexusdb.core.errors import QuotaExceededError, ValidationError
from nexusdb.domain.requests import ResourceSpec
from nexusdb.services.quota import QuotaService


def _service(**overrides) -> QuotaService:
    return QuotaService(Settings(_env_file=None, **overrides))


@pytest.mark.parametrize(
    "spec",
    [
        ResourceSpec(cpu=9, memory_mb=1024),
        ResourceSpec(cpu=1, memory_mb=40000),
        ResourceSpec(cpu=1, memory_mb=1024, storage_gb=2000),
        ResourceSpec(cpu=1, memory_mb=1024, replicas=11),
    ],
)
def test_per_deployment_ceilings(spec: ResourceSpec) -> None:
    with pytest.raises(QuotaExceededError):
        _service().check_spec(spec)


def test_spec_within_limits_passes() -> None:
    _service().check_spec(ResourceSpec(cpu=8, memory_mb=32768, storage_gb=1000, replicas=10))


def test_tenant_quota_bounds() -> None:
    service = _service(tenant_quota_max=100)
    service.check_tenant(100)
    with pytest.raises(ValidationError):
        service.check_tenant(0)
    with pytest.raises(QuotaExceededError):
        service.check_tenant(101)
