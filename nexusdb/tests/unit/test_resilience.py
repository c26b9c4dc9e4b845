from __future__ import annotations

import asyncio

import pytest

from nexusdb.core.errors import ConfigurationError, PipelineTimeoutError, ProvisioningError
from nexusdb.services.resilience import Bulkhead, KeyedLocks, RetryPolicy, backoff_seconds, retry_async


def _policy(**overrides) -> RetryPolicy:
    values = {"timeout_ms": 200, "max_attempts": 3, "backoff_ms": 1, "max_backoff_ms": 5}
    values.update(overrides)
    return RetryPolicy(**values)


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success() -> None:
    calls = {"count": 0}

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ProvisioningError("substrate busy")
        return "ok"

    retries: list[int] = []
    result = await retry_async(_flaky, policy=_policy(), on_retry=lambda attempt, exc: retries.append(attempt))
    assert result == "ok"
    assert calls["count"] == 3
    assert retries == [1, 2]


@pytest.mark.asyncio
async def test_non_transient_failures_are_not_retried() -> None:
    calls = {"count": 0}

    async def _broken() -> None:
        calls["count"] += 1
        raise ConfigurationError("bad spec")

    with pytest.raises(ConfigurationError):
        await retry_async(_broken, policy=_policy())
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_attempts_are_bounded_and_timeouts_count_as_transient() -> None:
    calls = {"count": 0}

    async def _hangs() -> None:
        calls["count"] += 1
        await asyncio.sleep(1)

    with pytest.raises(TimeoutError):
        await retry_async(_hangs, policy=_policy(timeout_ms=10, max_attempts=2))
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_expired_deadline_raises_pipeline_timeout() -> None:
    async def _never_called() -> None:
        raise AssertionError("should not run")

    with pytest.raises(PipelineTimeoutError):
        await retry_async(_never_called, policy=_policy(), deadline=0.0)


def test_backoff_is_exponential_and_capped() -> None:
    policy = _policy(backoff_ms=100, max_backoff_ms=350)
    assert backoff_seconds(policy, 1, jitter=False) == 0.1
    assert backoff_seconds(policy, 2, jitter=False) == 0.2
    assert backoff_seconds(policy, 3, jitter=False) == 0.35
    assert 0.05 <= backoff_seconds(policy, 1) <= 0.15


@pytest.mark.asyncio
async def test_bulkhead_limits_concurrency() -> None:
    bulkhead = Bulkhead("test", 1)
    lease = await bulkhead.acquire()
    assert bulkhead.in_use == 1
    assert await bulkhead.acquire(wait=False) is None
    lease.release()
    lease.release()
    assert bulkhead.in_use == 0
    async with bulkhead.slot():
        assert bulkhead.in_use == 1
    assert bulkhead.in_use == 0


@pytest.mark.asyncio
async def test_keyed_locks_are_per_key() -> None:
    locks = KeyedLocks()
    async with locks.get("dep-1"):
        assert locks.locked("dep-1")
        assert not locks.locked("dep-2")
        locks.discard("dep-1")
        assert locks.locked("dep-1")
    locks.discard("dep-1")
    assert not locks.locked("dep-1")
