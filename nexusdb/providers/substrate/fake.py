from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from typing import Deque

from nexusdb.core.errors import ConfigurationError
from nexusdb.providers.substrate.base import ProvisionSpec
from nexusdb.services.telemetry import ResourceUtilization


@dataclass
class FakeInstance:
    handle: str
    spec: ProvisionSpec
    running: bool = False


class FakeSubstrate:
    """Deterministic in-memory substrate.

    Handles are sequential (``fake-0001``, ``fake-0002``...), failures are
    injected per operation, and ``allocated_handles()`` supports resource
    audits after a test.
    """

    OPERATIONS = ("provision", "start", "stop", "destroy", "get_metrics")

    def __init__(self, *, default_metrics: ResourceUtilization | None = None) -> None:
        self._counter = 0
        self._instances: dict[str, FakeInstance] = {}
        self._failures: dict[str, Deque[BaseException]] = defaultdict(deque)
        self._delays: dict[str, float] = {}
        self._metrics: dict[str, ResourceUtilization] = {}
        self._unreachable: set[str] = set()
        self._default_metrics = default_metrics or ResourceUtilization(cpu=10.0, memory=20.0, disk_io=0.0, connections=0)
        self.calls: list[tuple[str, str | None]] = []

    # failure and latency injection

    def fail_next(self, operation: str, error: BaseException, *, times: int = 1) -> None:
        if operation not in self.OPERATIONS:
            raise ValueError(f"unknown operation {operation}")
        for _ in range(times):
            self._failures[operation].append(error)

    def set_delay(self, operation: str, seconds: float) -> None:
        self._delays[operation] = seconds

    def set_metrics(self, handle: str, metrics: ResourceUtilization) -> None:
        self._metrics[handle] = metrics

    def set_default_metrics(self, metrics: ResourceUtilization) -> None:
        self._default_metrics = metrics

    def set_unreachable(self, handle: str, unreachable: bool = True) -> None:
        if unreachable:
            self._unreachable.add(handle)
        else:
            self._unreachable.discard(handle)

    # audit helpers

    def allocated_handles(self) -> list[str]:
        return sorted(self._instances)

    def instance(self, handle: str) -> FakeInstance | None:
        return self._instances.get(handle)

    def is_running(self, handle: str) -> bool:
        instance = self._instances.get(handle)
        return instance is not None and instance.running

    async def _enter(self, operation: str, handle: str | None) -> None:
        self.calls.append((operation, handle))
        delay = self._delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    def _require(self, handle: str) -> FakeInstance:
        instance = self._instances.get(handle)
        if instance is None:
            raise ConfigurationError(f"unknown substrate handle {handle}")
        return instance

    # ExecutionSubstrate

    async def provision(self, spec: ProvisionSpec) -> str:
        await self._enter("provision", None)
        self._counter += 1
        handle = f"fake-{self._counter:04d}"
        self._instances[handle] = FakeInstance(handle=handle, spec=replace(spec))
        return handle

    async def start(self, handle: str) -> None:
        await self._enter("start", handle)
        self._require(handle).running = True

    async def stop(self, handle: str) -> None:
        await self._enter("stop", handle)
        self._require(handle).running = False

    async def destroy(self, handle: str) -> None:
        # Destroy is idempotent so rollback can be retried safely.
        await self._enter("destroy", handle)
        self._instances.pop(handle, None)
        self._metrics.pop(handle, None)
        self._unreachable.discard(handle)

    async def get_metrics(self, handle: str) -> ResourceUtilization:
        await self._enter("get_metrics", handle)
        instance = self._require(handle)
        if handle in self._unreachable or not instance.running:
            raise ConnectionError(f"instance {handle} is not reachable")
        return self._metrics.get(handle, self._default_metrics)
