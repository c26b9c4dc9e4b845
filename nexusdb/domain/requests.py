from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nexusdb.domain.state import EngineType, Environment, IsolationMode, RoutingStrategy


class ResourceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu: float = Field(gt=0)
    memory_mb: int = Field(gt=0)
    storage_gb: int = Field(default=10, gt=0)
    replicas: int = Field(default=1, ge=1)


class DeployRequest(BaseModel):
    # Transport-agnostic Deploy payload; callers may pass a dict and let the orchestrator parse it.
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    name: str | None = None
    engine_type: EngineType
    environment: Environment = Environment.DEV
    resource_spec: ResourceSpec
    tenant_isolation_mode: IsolationMode
    tls_enabled: bool = False
    routing_strategy: RoutingStrategy | None = None
    # Time-to-live for ephemeral deployments; dev deployments inherit a default.
    ttl_seconds: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_isolation_mode(self) -> "DeployRequest":
        # Key-prefix isolation has no meaning for relational engines and vice versa for schemas.
        if self.engine_type == EngineType.RELATIONAL and self.tenant_isolation_mode == IsolationMode.KEY_PREFIX:
            raise ValueError("key_prefix isolation requires a key_value engine")
        if self.engine_type == EngineType.KEY_VALUE and self.tenant_isolation_mode == IsolationMode.SCHEMA:
            raise ValueError("schema isolation requires a relational engine")
        return self


class ScalingPolicyInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_replicas: int = Field(ge=1)
    max_replicas: int = Field(ge=1)
    cooldown_seconds: int = Field(default=300, ge=0)
    cpu_up: float | None = Field(default=None, ge=0, le=100)
    cpu_down: float | None = Field(default=None, ge=0, le=100)
    memory_up: float | None = Field(default=None, ge=0, le=100)
    memory_down: float | None = Field(default=None, ge=0, le=100)
    connections_up: float | None = Field(default=None, ge=0)
    connections_down: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ScalingPolicyInput":
        if self.min_replicas > self.max_replicas:
            raise ValueError("min_replicas must not exceed max_replicas")
        for metric in ("cpu", "memory", "connections"):
            up = getattr(self, f"{metric}_up")
            down = getattr(self, f"{metric}_down")
            if up is not None and down is not None and down >= up:
                raise ValueError(f"{metric}_down must be below {metric}_up")
        return self
