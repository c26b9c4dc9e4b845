"""
Endpoint registry and load balancer.

Entries are immutable values published through a copy-on-write snapshot:
routing reads the current snapshot without locking, while registration and
health updates rebuild it inside a short critical section. Each entry runs a
circuit breaker (closed -> open after N consecutive failures -> half-open
after a cooldown, admitting exactly one trial request).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import random
import threading
import time
from typing import Callable
from urllib.parse import quote

from nexusdb.core.errors import NoHealthyEndpointError, NotFoundError, ValidationError
from nexusdb.domain.models import new_id
from nexusdb.domain.state import HealthStatus, IsolationMode, RoutingStrategy
from nexusdb.services.events import EventBus
from nexusdb.services.resilience import CircuitBreakerConfig
from nexusdb.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_Key = tuple[str, str | None]


@dataclass(frozen=True)
class RegistryEntry:
    entry_id: str
    deployment_id: str
    tenant_id: str | None
    endpoint: str
    handle: str | None
    base_weight: float = 1.0
    weight: float = 1.0
    health_status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_failures: int = 0
    # Monotonic time the breaker opened; None while closed.
    opened_at: float | None = None
    probe_in_flight: bool = False
    # Monotonic time the in-flight trial or probe was handed out.
    probe_started_at: float | None = None
    active_connections: int = 0
    latency_ms: float | None = None


@dataclass(frozen=True)
class RouteDecision:
    entry_id: str
    deployment_id: str
    tenant_id: str | None
    endpoint: str
    # True when this request is the single half-open trial for an open breaker.
    probe: bool = False
    started_at: float = 0.0


@dataclass(frozen=True)
class TenantConnection:
    tenant_id: str
    deployment_id: str
    isolation_mode: IsolationMode
    isolation_key: str
    endpoint: str
    connection_string: str
    routing_hints: dict[str, str] = field(default_factory=dict)


class Registry:
    def __init__(
        self,
        breaker: CircuitBreakerConfig,
        *,
        events: EventBus | None = None,
        default_strategy: RoutingStrategy | str = RoutingStrategy.ROUND_ROBIN,
        time_source: Callable[[], float] | None = None,
        rng: random.Random | None = None,
        latency_alpha: float = 0.3,
    ) -> None:
        self._breaker = breaker
        self._events = events
        self._default_strategy = RoutingStrategy(default_strategy)
        self._time = time_source or time.monotonic
        self._rng = rng or random.Random()
        self._latency_alpha = latency_alpha
        self._lock = threading.Lock()
        # Writers replace these dicts wholesale; readers never observe partial updates.
        self._by_id: dict[str, RegistryEntry] = {}
        self._snapshot: dict[_Key, tuple[RegistryEntry, ...]] = {}
        self._strategies: dict[str, RoutingStrategy] = {}
        self._cursors: dict[_Key, int] = {}

    # snapshot maintenance

    def _publish_locked(self, by_id: dict[str, RegistryEntry]) -> None:
        snapshot: dict[_Key, list[RegistryEntry]] = {}
        for entry in by_id.values():
            snapshot.setdefault((entry.deployment_id, entry.tenant_id), []).append(entry)
        self._by_id = by_id
        self._snapshot = {
            key: tuple(sorted(entries, key=lambda item: (item.endpoint, item.entry_id)))
            for key, entries in snapshot.items()
        }

    def _update(self, entry_id: str, mutate: Callable[[RegistryEntry], RegistryEntry]) -> tuple[RegistryEntry, RegistryEntry]:
        with self._lock:
            current = self._by_id.get(entry_id)
            if current is None:
                raise NotFoundError(f"registry entry {entry_id} not found")
            updated = mutate(current)
            by_id = dict(self._by_id)
            by_id[entry_id] = updated
            self._publish_locked(by_id)
        return current, updated

    # registration

    def register(
        self,
        deployment_id: str,
        endpoint: str,
        *,
        tenant_id: str | None = None,
        handle: str | None = None,
        weight: float = 1.0,
    ) -> RegistryEntry:
        if weight <= 0:
            raise ValidationError("registry weight must be positive")
        with self._lock:
            # Registration is idempotent per (deployment, tenant, endpoint) so retried stages do not duplicate.
            for existing in self._by_id.values():
                if (
                    existing.deployment_id == deployment_id
                    and existing.tenant_id == tenant_id
                    and existing.endpoint == endpoint
                ):
                    return existing
            entry = RegistryEntry(
                entry_id=new_id(),
                deployment_id=deployment_id,
                tenant_id=tenant_id,
                endpoint=endpoint,
                handle=handle,
                base_weight=weight,
                weight=weight,
            )
            by_id = dict(self._by_id)
            by_id[entry.entry_id] = entry
            self._publish_locked(by_id)
        logger.info(
            "registry_entry_registered deployment_id=%s tenant_id=%s endpoint=%s",
            deployment_id,
            tenant_id,
            endpoint,
        )
        return entry

    def deregister(self, entry_id: str) -> bool:
        with self._lock:
            if entry_id not in self._by_id:
                return False
            by_id = dict(self._by_id)
            removed = by_id.pop(entry_id)
            self._publish_locked(by_id)
        logger.info("registry_entry_deregistered deployment_id=%s endpoint=%s", removed.deployment_id, removed.endpoint)
        return True

    def deregister_deployment(self, deployment_id: str, *, tenant_id: str | None = None, all_tenants: bool = True) -> int:
        # By default removes every entry of the deployment, tenant-scoped ones included.
        with self._lock:
            by_id = {
                entry_id: entry
                for entry_id, entry in self._by_id.items()
                if not (
                    entry.deployment_id == deployment_id
                    and (all_tenants or entry.tenant_id == tenant_id)
                )
            }
            removed = len(self._by_id) - len(by_id)
            if removed:
                self._publish_locked(by_id)
                for key in [key for key in self._cursors if key[0] == deployment_id]:
                    self._cursors.pop(key, None)
            if all_tenants:
                self._strategies.pop(deployment_id, None)
        if removed:
            logger.info("registry_deployment_deregistered deployment_id=%s removed=%s", deployment_id, removed)
        return removed

    # reads

    def get(self, entry_id: str) -> RegistryEntry | None:
        return self._by_id.get(entry_id)

    def entries(self, deployment_id: str | None = None, *, tenant_id: str | None = None, all_tenants: bool = True) -> list[RegistryEntry]:
        snapshot = self._snapshot
        result: list[RegistryEntry] = []
        for (dep_id, ten_id), entries in sorted(snapshot.items(), key=lambda item: (item[0][0], item[0][1] or "")):
            if deployment_id is not None and dep_id != deployment_id:
                continue
            if not all_tenants and ten_id != tenant_id:
                continue
            result.extend(entries)
        return result

    def strategy_for(self, deployment_id: str) -> RoutingStrategy:
        return self._strategies.get(deployment_id, self._default_strategy)

    def set_strategy(self, deployment_id: str, strategy: RoutingStrategy | str) -> None:
        with self._lock:
            self._strategies[deployment_id] = RoutingStrategy(strategy)
        logger.info("registry_strategy_set deployment_id=%s strategy=%s", deployment_id, RoutingStrategy(strategy).value)

    def _trial_expired_at(self, entry: RegistryEntry) -> float | None:
        # A trial that never reports back counts as failed once its timeout passes.
        if not entry.probe_in_flight or entry.probe_started_at is None:
            return None
        return entry.probe_started_at + self._breaker.trial_timeout

    def _half_open_ready(self, entry: RegistryEntry, now: float) -> bool:
        if entry.health_status != HealthStatus.UNHEALTHY or entry.opened_at is None:
            return False
        if entry.probe_in_flight:
            expired_at = self._trial_expired_at(entry)
            return expired_at is not None and now - expired_at >= self._breaker.cooldown_seconds
        return now - entry.opened_at >= self._breaker.cooldown_seconds

    def _start_trial(self, entry: RegistryEntry, now: float) -> RegistryEntry:
        expired_at = self._trial_expired_at(entry)
        if expired_at is not None and now >= expired_at and entry.health_status == HealthStatus.UNHEALTHY:
            logger.warning("registry_trial_lost deployment_id=%s endpoint=%s", entry.deployment_id, entry.endpoint)
            increment_counter("registry_trial_lost_total")
            entry = replace(entry, consecutive_failures=entry.consecutive_failures + 1, opened_at=expired_at)
        return replace(entry, probe_in_flight=True, probe_started_at=now)

    def deployment_health(self, deployment_id: str) -> HealthStatus:
        # Aggregate across the deployment's own (non-tenant) entries.
        entries = self._snapshot.get((deployment_id, None), ())
        if not entries:
            return HealthStatus.UNKNOWN
        statuses = {entry.health_status for entry in entries}
        if statuses == {HealthStatus.UNHEALTHY}:
            return HealthStatus.UNHEALTHY
        if HealthStatus.UNHEALTHY in statuses or HealthStatus.DEGRADED in statuses:
            return HealthStatus.DEGRADED
        if statuses == {HealthStatus.HEALTHY}:
            return HealthStatus.HEALTHY
        return HealthStatus.UNKNOWN

    def stats(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        for entry in self._by_id.values():
            bucket = counts.setdefault(entry.deployment_id, {status.value: 0 for status in HealthStatus})
            bucket[entry.health_status.value] += 1
        return counts

    # routing

    def _candidates(self, deployment_id: str, tenant_id: str | None) -> tuple[RegistryEntry, ...]:
        snapshot = self._snapshot
        entries = snapshot.get((deployment_id, tenant_id), ())
        if not entries and tenant_id is not None:
            # Shared-instance tenants route through the deployment's own endpoints.
            entries = snapshot.get((deployment_id, None), ())
        return entries

    def _select(self, key: _Key, entries: list[RegistryEntry], strategy: RoutingStrategy) -> RegistryEntry:
        if strategy == RoutingStrategy.LEAST_CONNECTIONS:
            return min(entries, key=lambda entry: (entry.active_connections / entry.weight, entry.endpoint))
        if strategy == RoutingStrategy.LATENCY_WEIGHTED:
            weights = [entry.weight / max(entry.latency_ms or 1.0, 1.0) for entry in entries]
            return self._rng.choices(entries, weights=weights, k=1)[0]
        cursor = self._cursors.get(key, 0)
        self._cursors[key] = cursor + 1
        return entries[cursor % len(entries)]

    def route(self, deployment_id: str, *, tenant_id: str | None = None) -> RouteDecision:
        now = self._time()
        entries = self._candidates(deployment_id, tenant_id)
        if not entries:
            raise NoHealthyEndpointError(f"no registry entries for deployment {deployment_id}")
        key = (entries[0].deployment_id, entries[0].tenant_id)
        with self._lock:
            # A half-open entry takes the next request as its single trial.
            for entry in entries:
                current = self._by_id.get(entry.entry_id)
                if current is not None and self._half_open_ready(current, now):
                    trial = self._start_trial(current, now)
                    chosen = replace(trial, active_connections=trial.active_connections + 1)
                    probe = True
                    break
            else:
                eligible = [
                    self._by_id[entry.entry_id]
                    for entry in entries
                    if entry.entry_id in self._by_id and self._by_id[entry.entry_id].health_status != HealthStatus.UNHEALTHY
                ]
                if not eligible:
                    increment_counter("registry_route_rejected_total")
                    raise NoHealthyEndpointError(f"no healthy endpoint for deployment {deployment_id}")
                selected = self._select(key, eligible, self.strategy_for(deployment_id))
                chosen = replace(selected, active_connections=selected.active_connections + 1)
                probe = False
            by_id = dict(self._by_id)
            by_id[chosen.entry_id] = chosen
            self._publish_locked(by_id)
        if probe:
            logger.info("registry_half_open_probe deployment_id=%s endpoint=%s", deployment_id, chosen.endpoint)
        return RouteDecision(
            entry_id=chosen.entry_id,
            deployment_id=chosen.deployment_id,
            tenant_id=chosen.tenant_id,
            endpoint=chosen.endpoint,
            probe=probe,
            started_at=now,
        )

    def release(self, decision: RouteDecision, *, success: bool, latency_ms: float | None = None, reason: str | None = None) -> None:
        # Consumers report the outcome of a routed request; feeds both balancing and the breaker.
        if latency_ms is None:
            latency_ms = (self._time() - decision.started_at) * 1000.0
        try:
            self._update(
                decision.entry_id,
                lambda entry: replace(entry, active_connections=max(0, entry.active_connections - 1)),
            )
        except NotFoundError:
            return
        if success:
            self.record_success(decision.entry_id, latency_ms=latency_ms)
        else:
            self.record_failure(decision.entry_id, reason=reason)

    # breaker

    def claim_probe(self, entry_id: str) -> bool:
        # Background prober variant of the half-open trial; at most one probe in flight per entry.
        now = self._time()
        with self._lock:
            current = self._by_id.get(entry_id)
            if current is None:
                return False
            if current.health_status == HealthStatus.UNHEALTHY:
                if not self._half_open_ready(current, now):
                    return False
            elif current.probe_in_flight:
                expired_at = self._trial_expired_at(current)
                if expired_at is None or now < expired_at:
                    return False
            by_id = dict(self._by_id)
            by_id[entry_id] = self._start_trial(current, now)
            self._publish_locked(by_id)
        return True

    def record_success(self, entry_id: str, *, latency_ms: float | None = None) -> RegistryEntry | None:
        def _mutate(entry: RegistryEntry) -> RegistryEntry:
            latency = entry.latency_ms
            if latency_ms is not None:
                latency = latency_ms if latency is None else latency + self._latency_alpha * (latency_ms - latency)
            return replace(
                entry,
                health_status=HealthStatus.HEALTHY,
                consecutive_failures=0,
                opened_at=None,
                probe_in_flight=False,
                probe_started_at=None,
                weight=entry.base_weight,
                latency_ms=latency,
            )

        try:
            before, after = self._update(entry_id, _mutate)
        except NotFoundError:
            return None
        if before.health_status == HealthStatus.UNHEALTHY:
            logger.info("registry_entry_recovered deployment_id=%s endpoint=%s", after.deployment_id, after.endpoint)
            increment_counter("registry_entry_recovered_total")
            if self._events is not None:
                self._events.emit(
                    "registry.entry_recovered",
                    after.deployment_id,
                    entry_id=after.entry_id,
                    endpoint=after.endpoint,
                    tenant_id=after.tenant_id,
                )
        return after

    def record_failure(self, entry_id: str, *, reason: str | None = None) -> RegistryEntry | None:
        now = self._time()
        threshold = self._breaker.failure_threshold

        def _mutate(entry: RegistryEntry) -> RegistryEntry:
            failures = entry.consecutive_failures + 1
            if entry.health_status == HealthStatus.UNHEALTHY:
                # Failed half-open trial: restart the cooldown.
                return replace(
                    entry,
                    consecutive_failures=failures,
                    opened_at=now,
                    probe_in_flight=False,
                    probe_started_at=None,
                    weight=0.0,
                )
            if failures >= threshold:
                return replace(
                    entry,
                    health_status=HealthStatus.UNHEALTHY,
                    consecutive_failures=failures,
                    opened_at=now,
                    probe_in_flight=False,
                    probe_started_at=None,
                    weight=0.0,
                )
            return replace(
                entry,
                health_status=HealthStatus.DEGRADED,
                consecutive_failures=failures,
                probe_in_flight=False,
                probe_started_at=None,
                weight=entry.base_weight / 2.0,
            )

        try:
            before, after = self._update(entry_id, _mutate)
        except NotFoundError:
            return None
        logger.warning(
            "registry_entry_failure deployment_id=%s endpoint=%s failures=%s reason=%s",
            after.deployment_id,
            after.endpoint,
            after.consecutive_failures,
            reason,
        )
        if before.health_status != HealthStatus.UNHEALTHY and after.health_status == HealthStatus.UNHEALTHY:
            increment_counter("registry_entry_opened_total")
            if self._events is not None:
                self._events.emit(
                    "registry.entry_unhealthy",
                    after.deployment_id,
                    entry_id=after.entry_id,
                    endpoint=after.endpoint,
                    tenant_id=after.tenant_id,
                    consecutive_failures=after.consecutive_failures,
                )
        return after

    # tenant-aware resolution

    def resolve_tenant(
        self,
        *,
        deployment_id: str,
        tenant_id: str,
        isolation_mode: IsolationMode | str,
        isolation_key: str,
    ) -> TenantConnection:
        mode = IsolationMode(isolation_mode)
        lookup_tenant = tenant_id if mode == IsolationMode.DEDICATED_INSTANCE else None
        entries = self._snapshot.get((deployment_id, lookup_tenant), ())
        routable = [entry for entry in entries if entry.health_status != HealthStatus.UNHEALTHY]
        if not routable:
            raise NoHealthyEndpointError(f"no healthy endpoint for tenant {tenant_id} of deployment {deployment_id}")
        endpoint = min(routable, key=lambda entry: (entry.active_connections, entry.endpoint)).endpoint
        hints: dict[str, str] = {}
        if mode == IsolationMode.SCHEMA:
            connection_string = f"{endpoint}?schema={quote(isolation_key, safe='')}"
            hints["schema"] = isolation_key
        elif mode == IsolationMode.KEY_PREFIX:
            connection_string = endpoint
            hints["key_prefix"] = f"{isolation_key}:"
        else:
            connection_string = endpoint
            hints["instance"] = isolation_key
        return TenantConnection(
            tenant_id=tenant_id,
            deployment_id=deployment_id,
            isolation_mode=mode,
            isolation_key=isolation_key,
            endpoint=endpoint,
            connection_string=connection_string,
            routing_hints=hints,
        )
