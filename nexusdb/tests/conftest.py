from __future__ import annotations

import pytest

from nexusdb.core.config import Settings
from nexusdb.persistence.db import build_engine, create_schema
from nexusdb.providers.substrate.fake import FakeSubstrate
from nexusdb.runtime import Runtime, build_runtime
from nexusdb.tests.utils.clock import FrozenClock


@pytest.fixture
def settings(tmp_path) -> Settings:
    # Isolated sqlite file per test; retries and cooldowns shrunk so failure paths run fast.
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'nexusdb.db'}",
        backup_local_dir=str(tmp_path / "backups"),
        pipeline_stage_timeout_s=2.0,
        pipeline_provision_timeout_s=2.0,
        pipeline_timeout_s=20.0,
        pipeline_backoff_ms=1,
        pipeline_max_backoff_ms=5,
        registry_cooldown_s=0.05,
        probe_timeout_ms=500,
        maintenance_queue_timeout_s=2.0,
        dev_default_ttl_s=None,
        default_backup_cron=None,
        substrate_backend="fake",
    )


@pytest.fixture
def substrate() -> FakeSubstrate:
    return FakeSubstrate()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def runtime(settings: Settings, substrate: FakeSubstrate, clock: FrozenClock) -> Runtime:
    engine = build_engine(settings)
    await create_schema(engine)
    runtime = build_runtime(settings, engine=engine, substrate=substrate, time_provider=clock)
    yield runtime
    await runtime.close()


@pytest.fixture
def orchestrator(runtime: Runtime):
    return runtime.orchestrator
