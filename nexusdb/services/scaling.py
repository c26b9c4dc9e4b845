from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from nexusdb.core.clock import as_utc
from nexusdb.core.errors import ScalingPolicyViolationError, ValidationError
from nexusdb.domain.models import ScalingPolicy
from nexusdb.services.telemetry import ResourceUtilization


ScalingAction = Literal["scale_up", "scale_down", "none"]
ScalingTrigger = Literal["manual", "reactive", "scheduled", "policy"]


@dataclass(frozen=True)
class ScalingDecision:
    action: ScalingAction
    current_replicas: int
    target_replicas: int
    reason: str
    breached: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ScalingResult:
    deployment_id: str
    previous_replicas: int
    current_replicas: int
    trigger: str
    endpoints: list[str]
    duration_ms: float


def validate_bounds(policy: ScalingPolicy | None, desired: int, *, quota_max_replicas: int) -> None:
    if desired < 1:
        raise ValidationError("desired replicas must be at least 1")
    if desired > quota_max_replicas:
        raise ScalingPolicyViolationError(f"desired replicas {desired} exceeds quota limit {quota_max_replicas}")
    if policy is None:
        return
    if desired < policy.min_replicas or desired > policy.max_replicas:
        raise ScalingPolicyViolationError(
            f"desired replicas {desired} outside policy bounds [{policy.min_replicas}, {policy.max_replicas}]"
        )


def clamp_replicas(policy: ScalingPolicy, replicas: int) -> int:
    return max(policy.min_replicas, min(policy.max_replicas, replicas))


def in_cooldown(policy: ScalingPolicy, now: datetime) -> bool:
    last = as_utc(policy.last_scaled_at)
    if last is None:
        return False
    return now - last < timedelta(seconds=policy.cooldown_seconds)


def _metric_values(utilization: ResourceUtilization) -> dict[str, float]:
    return {
        "cpu": utilization.cpu,
        "memory": utilization.memory,
        "connections": float(utilization.connections),
    }


def evaluate(
    policy: ScalingPolicy,
    utilization: ResourceUtilization,
    current_replicas: int,
    now: datetime,
) -> ScalingDecision:
    # Any metric over its up threshold scales out; every configured metric under its
    # down threshold scales in. Steps are one replica, clamped to the policy bounds.
    if current_replicas < policy.min_replicas or current_replicas > policy.max_replicas:
        target = clamp_replicas(policy, current_replicas)
        action: ScalingAction = "scale_up" if target > current_replicas else "scale_down"
        return ScalingDecision(action, current_replicas, target, "replicas outside policy bounds")
    if in_cooldown(policy, now):
        return ScalingDecision("none", current_replicas, current_replicas, "cooldown")
    values = _metric_values(utilization)
    breached_up = {
        metric: value
        for metric, value in values.items()
        if getattr(policy, f"{metric}_up") is not None and value > getattr(policy, f"{metric}_up")
    }
    if breached_up:
        if current_replicas >= policy.max_replicas:
            return ScalingDecision("none", current_replicas, current_replicas, "at max_replicas", breached_up)
        return ScalingDecision(
            "scale_up",
            current_replicas,
            current_replicas + 1,
            "above threshold: " + ", ".join(sorted(breached_up)),
            breached_up,
        )
    configured_down = {
        metric: getattr(policy, f"{metric}_down")
        for metric in values
        if getattr(policy, f"{metric}_down") is not None
    }
    if configured_down and all(values[metric] < threshold for metric, threshold in configured_down.items()):
        if current_replicas <= policy.min_replicas:
            return ScalingDecision("none", current_replicas, current_replicas, "at min_replicas")
        return ScalingDecision(
            "scale_down",
            current_replicas,
            current_replicas - 1,
            "below threshold: " + ", ".join(sorted(configured_down)),
            {metric: values[metric] for metric in configured_down},
        )
    return ScalingDecision("none", current_replicas, current_replicas, "within thresholds")
