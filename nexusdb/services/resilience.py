from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from nexusdb.core.config import Settings
from nexusdb.core.errors import PipelineTimeoutError, is_transient
from nexusdb.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior so stage and collaborator calls share one policy shape.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int = 30000


def pipeline_retry_policy(settings: Settings, *, timeout_s: float | None = None) -> RetryPolicy:
    return RetryPolicy(
        timeout_ms=int((timeout_s or settings.pipeline_stage_timeout_s) * 1000),
        max_attempts=settings.pipeline_max_attempts,
        backoff_ms=settings.pipeline_backoff_ms,
        max_backoff_ms=settings.pipeline_max_backoff_ms,
    )


def backoff_seconds(policy: RetryPolicy, attempt: int, *, jitter: bool = True) -> float:
    # Exponential backoff capped at max_backoff_ms, jittered to spread retry storms.
    base = min(policy.backoff_ms * (2 ** (attempt - 1)), policy.max_backoff_ms) / 1000.0
    if not jitter:
        return base
    return base * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    deadline: float | None = None,
    on_retry: Callable[[int, Exception], Awaitable[None] | None] | None = None,
) -> Any:
    # Retry transient failures with backoff; each attempt is bounded by the policy timeout
    # and, when given, by the remaining time before the monotonic deadline.
    retryable = retryable or is_transient
    attempt = 1
    while True:
        timeout_s = policy.timeout_ms / 1000.0
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PipelineTimeoutError("aggregate deadline exceeded")
            timeout_s = min(timeout_s, remaining)
        try:
            return await asyncio.wait_for(func(), timeout=timeout_s)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if deadline is not None and deadline - time.monotonic() <= 0:
                raise PipelineTimeoutError("aggregate deadline exceeded") from exc
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("retries_total")
            if on_retry is not None:
                outcome = on_retry(attempt, exc)
                if asyncio.iscoroutine(outcome):
                    await outcome
            sleep_s = backoff_seconds(policy, attempt)
            if deadline is not None:
                sleep_s = max(0.0, min(sleep_s, deadline - time.monotonic()))
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Thresholds for registry entry health; tuned through settings.
    failure_threshold: int
    cooldown_seconds: float
    half_open_trials: int = 1
    # How long a half-open trial may stay unreported; None falls back to the cooldown.
    trial_timeout_seconds: float | None = None

    @property
    def trial_timeout(self) -> float:
        return self.cooldown_seconds if self.trial_timeout_seconds is None else self.trial_timeout_seconds


def circuit_breaker_config(settings: Settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=max(1, settings.registry_failure_threshold),
        cooldown_seconds=settings.registry_cooldown_s,
        trial_timeout_seconds=max(settings.registry_cooldown_s, settings.probe_timeout_ms / 1000.0),
    )


@dataclass
class BulkheadLease:
    # Track bulkhead ownership to avoid double-releasing.
    bulkhead: "Bulkhead"
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.bulkhead._release()
        self.released = True


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap global concurrency for expensive operations.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._in_use = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    async def acquire(self, *, wait: bool = True) -> BulkheadLease | None:
        # Without wait, return None immediately when saturated.
        if not wait and self._sem.locked():
            return None
        await self._sem.acquire()
        self._in_use += 1
        set_gauge(f"bulkhead_in_use.{self._name}", float(self._in_use))
        return BulkheadLease(self)

    def _release(self) -> None:
        self._sem.release()
        self._in_use = max(0, self._in_use - 1)
        set_gauge(f"bulkhead_in_use.{self._name}", float(self._in_use))

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        lease = await self.acquire(wait=True)
        try:
            yield
        finally:
            if lease is not None:
                lease.release()


class KeyedLocks:
    """One asyncio lock per key; serializes mutating operations per deployment."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: str) -> None:
        # Drop idle locks for purged deployments so the map stays bounded.
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
