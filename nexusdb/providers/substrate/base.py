from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from nexusdb.services.telemetry import ResourceUtilization


@dataclass(frozen=True)
class ProvisionSpec:
    # Everything the substrate needs to create one database instance.
    deployment_id: str
    engine_type: str
    image: str
    node_id: str
    cpu: float
    memory_mb: int
    storage_gb: int
    port: int
    config_artifacts: dict[str, str] = field(default_factory=dict)
    init_script: str = ""
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


class ExecutionSubstrate(Protocol):
    """Runtime that starts and stops database processes. Handles are opaque."""

    async def provision(self, spec: ProvisionSpec) -> str:
        ...

    async def start(self, handle: str) -> None:
        ...

    async def stop(self, handle: str) -> None:
        ...

    async def destroy(self, handle: str) -> None:
        ...

    async def get_metrics(self, handle: str) -> ResourceUtilization:
        ...
