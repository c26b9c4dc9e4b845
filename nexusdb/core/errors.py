from __future__ import annotations


class NexusDBError(Exception):
    """Base error for nexusdb."""


class ValidationError(NexusDBError):
    """Malformed request; surfaced immediately, never retried."""


class NotFoundError(NexusDBError):
    """Referenced deployment, tenant or backup does not exist."""


class QuotaExceededError(NexusDBError):
    """Request exceeds configured per-user or global limits."""


class ProvisioningError(NexusDBError):
    """Recoverable substrate or template-provider failure; retried with backoff."""


class CapacityUnavailableError(ProvisioningError):
    """No candidate node currently has room for the requested resources."""


class ConfigurationError(NexusDBError):
    """Invalid resource spec discovered during provisioning; never retried."""


class HealthCheckFailure(NexusDBError):
    """A probe or consumer-reported check failed for a registry entry."""


class ScalingConflictError(NexusDBError):
    """Another mutating operation is already in flight for the deployment."""


class ScalingPolicyViolationError(ValidationError):
    """Requested replica count falls outside the scaling policy bounds."""


class TenantConflictError(ValidationError):
    """Isolation key already exists for the deployment."""


class BackupFailure(NexusDBError):
    """Backup execution failed; the backup record is marked failed."""


class RestoreError(NexusDBError):
    """Restore could not be applied (missing, incomplete or corrupted backup)."""


class InvalidStateTransitionError(NexusDBError):
    """Deployment state change is not an edge of the lifecycle state machine."""


class NoHealthyEndpointError(NexusDBError):
    """No registry entry is currently eligible for routing."""


class PipelineCancelledError(NexusDBError):
    """Cancellation was observed at a pipeline stage boundary."""


class PipelineTimeoutError(NexusDBError):
    """Aggregate pipeline budget exhausted."""


TRANSIENT_ERRORS = (TimeoutError, OSError, ProvisioningError)


def is_transient(exc: BaseException) -> bool:
    # Only recoverable infrastructure failures are retried.
    return isinstance(exc, TRANSIENT_ERRORS)
