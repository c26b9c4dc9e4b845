from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque

from nexusdb.core.clock import TimeProvider, utc_now
from nexusdb.domain.state import HealthStatus


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class ResourceUtilization:
    # Raw counters reported by the execution substrate for one instance.
    cpu: float = 0.0
    memory: float = 0.0
    disk_io: float = 0.0
    connections: int = 0


@dataclass(frozen=True)
class HealthSnapshot:
    deployment_id: str
    timestamp: datetime
    status: HealthStatus
    latency_ms: float | None
    resource_utilization: ResourceUtilization = field(default_factory=ResourceUtilization)


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture collaborator call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate collaborator call latency in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for integration, latencies in by_integration.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


class HealthSnapshotStore:
    """Append-only, per-deployment health history pruned after a retention window."""

    def __init__(
        self,
        *,
        retention_s: int,
        max_per_deployment: int = 2000,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._retention = timedelta(seconds=max(1, retention_s))
        self._max = max_per_deployment
        self._now = time_provider or utc_now
        self._snapshots: dict[str, Deque[HealthSnapshot]] = {}

    def append(self, snapshot: HealthSnapshot) -> None:
        bucket = self._snapshots.setdefault(snapshot.deployment_id, deque(maxlen=self._max))
        bucket.append(snapshot)

    def latest(self, deployment_id: str) -> HealthSnapshot | None:
        bucket = self._snapshots.get(deployment_id)
        if not bucket:
            return None
        return bucket[-1]

    def history(self, deployment_id: str, *, since: datetime | None = None) -> list[HealthSnapshot]:
        bucket = self._snapshots.get(deployment_id, ())
        return [snap for snap in bucket if since is None or snap.timestamp >= since]

    def prune(self, now: datetime | None = None) -> int:
        cutoff = (now or self._now()) - self._retention
        removed = 0
        for deployment_id in list(self._snapshots):
            bucket = self._snapshots[deployment_id]
            while bucket and bucket[0].timestamp < cutoff:
                bucket.popleft()
                removed += 1
            if not bucket:
                del self._snapshots[deployment_id]
        return removed

    def forget(self, deployment_id: str) -> None:
        self._snapshots.pop(deployment_id, None)
