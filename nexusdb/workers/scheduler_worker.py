from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from nexusdb.core.config import get_settings
from nexusdb.core.logging import configure_logging
from nexusdb.runtime import Runtime, start_runtime


logger = logging.getLogger(__name__)


def _tick_seconds(interval_s: float) -> set[int]:
    # arq cron matches wall-clock fields; spread ticks evenly across each minute.
    step = min(60, max(1, int(interval_s)))
    return set(range(0, 60, step))


async def scheduler_tick(ctx) -> dict[str, int]:
    runtime: Runtime = ctx["runtime"]
    report = await runtime.scheduler.tick()
    return {
        "backups_fired": report.backups_fired,
        "decommissioned": report.decommissioned,
        "autoscaled": report.autoscaled,
        "errors": len(report.errors),
    }


async def _startup(ctx) -> None:
    # Build the control plane once per worker process and keep probes running in the background.
    configure_logging()
    settings = get_settings()
    runtime = await start_runtime(settings)
    ctx["runtime"] = runtime
    ctx["probe_task"] = asyncio.create_task(runtime.prober.run_forever(settings.probe_interval_s))
    logger.info("scheduler_worker_started queue=%s", settings.scheduler_queue_name)


async def _shutdown(ctx) -> None:
    task = ctx.get("probe_task")
    if task:
        task.cancel()
    runtime: Runtime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scheduler_queue_name
    cron_jobs = [
        cron(scheduler_tick, second=_tick_seconds(settings.scheduler_tick_interval_s), run_at_startup=True, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
