from __future__ import annotations

from enum import Enum


class DeploymentState(str, Enum):
    REQUESTED = "requested"
    QUOTA_VALIDATED = "quota_validated"
    PROVISIONING = "provisioning"
    CONFIGURING = "configuring"
    REGISTERING = "registering"
    HEALTH_VALIDATING = "health_validating"
    ACTIVE = "active"
    SCALING = "scaling"
    DECOMMISSIONING = "decommissioning"
    DESTROYED = "destroyed"
    FAILED = "failed"


class EngineType(str, Enum):
    RELATIONAL = "relational"
    KEY_VALUE = "key_value"


class Environment(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class IsolationMode(str, Enum):
    SCHEMA = "schema"
    KEY_PREFIX = "key_prefix"
    DEDICATED_INSTANCE = "dedicated_instance"


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"


class BackupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class RoutingStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    LEAST_CONNECTIONS = "least_connections"
    LATENCY_WEIGHTED = "latency_weighted"


_S = DeploymentState

_TRANSITIONS: dict[DeploymentState, frozenset[DeploymentState]] = {
    _S.REQUESTED: frozenset({_S.QUOTA_VALIDATED, _S.FAILED}),
    _S.QUOTA_VALIDATED: frozenset({_S.PROVISIONING, _S.FAILED}),
    _S.PROVISIONING: frozenset({_S.CONFIGURING, _S.FAILED}),
    _S.CONFIGURING: frozenset({_S.REGISTERING, _S.FAILED}),
    _S.REGISTERING: frozenset({_S.HEALTH_VALIDATING, _S.FAILED}),
    _S.HEALTH_VALIDATING: frozenset({_S.ACTIVE, _S.FAILED}),
    _S.ACTIVE: frozenset({_S.SCALING, _S.DECOMMISSIONING, _S.FAILED}),
    _S.SCALING: frozenset({_S.ACTIVE, _S.FAILED}),
    _S.DECOMMISSIONING: frozenset({_S.DESTROYED, _S.FAILED}),
    _S.DESTROYED: frozenset(),
    _S.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({_S.DESTROYED, _S.FAILED})
# Endpoints may be published on the record only in these states.
SERVING_STATES = frozenset({_S.ACTIVE, _S.SCALING})
# States in which the pipeline still owns the record.
IN_PROGRESS_STATES = frozenset(
    {
        _S.REQUESTED,
        _S.QUOTA_VALIDATED,
        _S.PROVISIONING,
        _S.CONFIGURING,
        _S.REGISTERING,
        _S.HEALTH_VALIDATING,
    }
)


def can_transition(current: DeploymentState | str, target: DeploymentState | str) -> bool:
    return DeploymentState(target) in _TRANSITIONS[DeploymentState(current)]


def allowed_targets(current: DeploymentState | str) -> frozenset[DeploymentState]:
    return _TRANSITIONS[DeploymentState(current)]


def is_terminal(state: DeploymentState | str) -> bool:
    return DeploymentState(state) in TERMINAL_STATES
