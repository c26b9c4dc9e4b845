"""
Engine Template Provider.

Turns an engine type and a resource spec into ready-to-apply configuration
artifacts and an initialization script. Generation is a pure function of its
inputs so pipeline retries always see identical output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
from typing import Callable, Protocol

from nexusdb.core.errors import ConfigurationError
from nexusdb.domain.requests import ResourceSpec
from nexusdb.domain.state import EngineType


@dataclass(frozen=True)
class EngineConfig:
    config_artifacts: dict[str, str]
    init_script: str
    # Connection facts the deployer needs to build endpoints.
    scheme: str
    port: int
    database: str
    image: str
    env: dict[str, str] = field(default_factory=dict)

    @property
    def digest(self) -> str:
        payload = json.dumps(
            {
                "artifacts": self.config_artifacts,
                "init_script": self.init_script,
                "image": self.image,
                "port": self.port,
            },
            sort_keys=True,
        ).encode("utf-8")
        return hashlib.sha256(payload).hexdigest()


class EngineTemplateProvider(Protocol):
    async def generate_config(self, engine_type: EngineType, spec: ResourceSpec) -> EngineConfig:
        ...


RELATIONAL_MIN_MEMORY_MB = 256
KEY_VALUE_MIN_MEMORY_MB = 64


def _relational_config(spec: ResourceSpec) -> EngineConfig:
    if spec.memory_mb < RELATIONAL_MIN_MEMORY_MB:
        raise ConfigurationError(
            f"relational engine requires at least {RELATIONAL_MIN_MEMORY_MB}MB memory, got {spec.memory_mb}MB"
        )
    # Classic sizing: a quarter of memory for shared buffers, three quarters as cache hint.
    shared_buffers = max(32, spec.memory_mb // 4)
    effective_cache = max(64, (spec.memory_mb * 3) // 4)
    max_connections = min(500, max(20, int(spec.memory_mb / 16)))
    workers = max(1, int(spec.cpu * 2))
    postgresql_conf = "\n".join(
        [
            "listen_addresses = '*'",
            "port = 5432",
            f"max_connections = {max_connections}",
            f"shared_buffers = {shared_buffers}MB",
            f"effective_cache_size = {effective_cache}MB",
            f"work_mem = {max(1, shared_buffers // max_connections)}MB",
            f"max_worker_processes = {workers}",
            f"max_parallel_workers = {workers}",
            "wal_level = replica",
            f"max_wal_senders = {max(2, spec.replicas * 2)}",
            "hot_standby = on",
            "",
        ]
    )
    pg_hba = "\n".join(
        [
            "local   all   all                 trust",
            "host    all   all   0.0.0.0/0     scram-sha-256",
            "host    replication   all   0.0.0.0/0   scram-sha-256",
            "",
        ]
    )
    init_script = "\n".join(
        [
            "CREATE DATABASE app;",
            "REVOKE ALL ON DATABASE app FROM PUBLIC;",
            "CREATE SCHEMA IF NOT EXISTS shared;",
            "",
        ]
    )
    return EngineConfig(
        config_artifacts={"postgresql.conf": postgresql_conf, "pg_hba.conf": pg_hba},
        init_script=init_script,
        scheme="postgresql",
        port=5432,
        database="app",
        image="docker.io/library/postgres:16-alpine",
        env={"POSTGRES_DB": "app"},
    )


def _key_value_config(spec: ResourceSpec) -> EngineConfig:
    if spec.memory_mb < KEY_VALUE_MIN_MEMORY_MB:
        raise ConfigurationError(
            f"key-value engine requires at least {KEY_VALUE_MIN_MEMORY_MB}MB memory, got {spec.memory_mb}MB"
        )
    # Leave headroom for fork-based persistence.
    maxmemory = max(32, (spec.memory_mb * 3) // 4)
    redis_conf = "\n".join(
        [
            "bind 0.0.0.0",
            "port 6379",
            "protected-mode yes",
            f"maxmemory {maxmemory}mb",
            "maxmemory-policy allkeys-lru",
            "appendonly yes",
            "appendfsync everysec",
            f"io-threads {max(1, min(8, int(spec.cpu)))}",
            "",
        ]
    )
    init_script = "\n".join(
        [
            "ACL SETUSER default off",
            "ACL SETUSER app on ~* &* +@all -@dangerous",
            "",
        ]
    )
    return EngineConfig(
        config_artifacts={"redis.conf": redis_conf},
        init_script=init_script,
        scheme="redis",
        port=6379,
        database="0",
        image="docker.io/library/redis:7-alpine",
    )


_GENERATORS: dict[EngineType, Callable[[ResourceSpec], EngineConfig]] = {
    EngineType.RELATIONAL: _relational_config,
    EngineType.KEY_VALUE: _key_value_config,
}


class DefaultTemplateProvider:
    async def generate_config(self, engine_type: EngineType, spec: ResourceSpec) -> EngineConfig:
        generator = _GENERATORS.get(EngineType(engine_type))
        if generator is None:
            raise ConfigurationError(f"unsupported engine type: {engine_type}")
        return generator(spec)
