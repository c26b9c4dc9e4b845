from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from nexusdb.core.clock import TimeProvider, utc_now
from nexusdb.domain.state import HealthStatus
from nexusdb.providers.substrate.base import ExecutionSubstrate
from nexusdb.services.registry import Registry, RegistryEntry
from nexusdb.services.telemetry import (
    HealthSnapshot,
    HealthSnapshotStore,
    ResourceUtilization,
    increment_counter,
    record_external_call,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeOutcome:
    entry_id: str
    deployment_id: str
    healthy: bool
    latency_ms: float | None
    utilization: ResourceUtilization | None
    error: str | None = None


class HealthProber:
    """Probes registry entries through the substrate and feeds the circuit breaker.

    Probe round-trips use their own timeout, independent of pipeline timeouts.
    Failures are absorbed into registry state and never raised to callers.
    """

    def __init__(
        self,
        *,
        registry: Registry,
        substrate: ExecutionSubstrate,
        snapshots: HealthSnapshotStore,
        probe_timeout_ms: int,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._registry = registry
        self._substrate = substrate
        self._snapshots = snapshots
        self._timeout_s = max(0.001, probe_timeout_ms / 1000.0)
        self._now = time_provider or utc_now
        self._stopping = asyncio.Event()

    async def probe_entry(self, entry: RegistryEntry) -> ProbeOutcome:
        if entry.handle is None:
            self._registry.record_failure(entry.entry_id, reason="entry has no substrate handle")
            return ProbeOutcome(entry.entry_id, entry.deployment_id, False, None, None, "entry has no substrate handle")
        start = time.monotonic()
        try:
            utilization = await asyncio.wait_for(self._substrate.get_metrics(entry.handle), timeout=self._timeout_s)
        except Exception as exc:  # noqa: BLE001 - probe failures feed the breaker
            latency_ms = (time.monotonic() - start) * 1000.0
            record_external_call(integration="substrate_probe", latency_ms=latency_ms, success=False)
            increment_counter("health_probe_failures_total")
            error = "probe timed out" if isinstance(exc, TimeoutError) else str(exc) or type(exc).__name__
            self._registry.record_failure(entry.entry_id, reason=error)
            return ProbeOutcome(entry.entry_id, entry.deployment_id, False, latency_ms, None, error)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_external_call(integration="substrate_probe", latency_ms=latency_ms, success=True)
        self._registry.record_success(entry.entry_id, latency_ms=latency_ms)
        return ProbeOutcome(entry.entry_id, entry.deployment_id, True, latency_ms, utilization)

    async def run_probe_cycle(self) -> list[ProbeOutcome]:
        # Probe every entry that is closed or due for its half-open trial.
        claimed = [entry for entry in self._registry.entries() if self._registry.claim_probe(entry.entry_id)]
        if not claimed:
            return []
        outcomes = await asyncio.gather(*(self.probe_entry(entry) for entry in claimed))
        self._record_snapshots(outcomes)
        return list(outcomes)

    def _record_snapshots(self, outcomes: list[ProbeOutcome]) -> None:
        by_deployment: dict[str, list[ProbeOutcome]] = {}
        for outcome in outcomes:
            by_deployment.setdefault(outcome.deployment_id, []).append(outcome)
        now = self._now()
        for deployment_id, items in by_deployment.items():
            healthy = [item for item in items if item.healthy]
            latencies = [item.latency_ms for item in healthy if item.latency_ms is not None]
            self._snapshots.append(
                HealthSnapshot(
                    deployment_id=deployment_id,
                    timestamp=now,
                    status=self._registry.deployment_health(deployment_id),
                    latency_ms=sum(latencies) / len(latencies) if latencies else None,
                    resource_utilization=average_utilization([item.utilization for item in healthy if item.utilization]),
                )
            )

    async def run_forever(self, interval_s: float) -> None:
        logger.info("health_prober_started interval_s=%s", interval_s)
        while not self._stopping.is_set():
            try:
                await self.run_probe_cycle()
            except Exception:  # noqa: BLE001 - keep the probe loop alive
                logger.exception("health_probe_cycle_failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval_s)
            except TimeoutError:
                continue
        logger.info("health_prober_stopped")

    def stop(self) -> None:
        self._stopping.set()


def average_utilization(samples: list[ResourceUtilization]) -> ResourceUtilization:
    if not samples:
        return ResourceUtilization()
    count = len(samples)
    return ResourceUtilization(
        cpu=sum(sample.cpu for sample in samples) / count,
        memory=sum(sample.memory for sample in samples) / count,
        disk_io=sum(sample.disk_io for sample in samples) / count,
        connections=round(sum(sample.connections for sample in samples) / count),
    )


def summarize_status(statuses: list[HealthStatus]) -> HealthStatus:
    # Roll deployment statuses up into one system status.
    if not statuses:
        return HealthStatus.UNKNOWN
    if all(status == HealthStatus.HEALTHY for status in statuses):
        return HealthStatus.HEALTHY
    if all(status == HealthStatus.UNHEALTHY for status in statuses):
        return HealthStatus.UNHEALTHY
    if any(status in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED) for status in statuses):
        return HealthStatus.DEGRADED
    return HealthStatus.UNKNOWN
