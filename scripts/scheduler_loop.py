from __future__ import annotations

import argparse
import asyncio

from nexusdb.core.config import get_settings
from nexusdb.core.logging import configure_logging
from nexusdb.runtime import start_runtime


async def _main(*, once: bool, bootstrap_schema: bool) -> None:
    # Run scheduler ticks and health probes in-process, without Redis or arq.
    configure_logging()
    settings = get_settings()
    runtime = await start_runtime(settings, bootstrap_schema=bootstrap_schema)
    try:
        if once:
            report = await runtime.scheduler.tick()
            print(f"backups_fired={report.backups_fired} decommissioned={report.decommissioned} errors={len(report.errors)}")
            return
        probes = asyncio.create_task(runtime.prober.run_forever(settings.probe_interval_s))
        try:
            await runtime.scheduler.run_forever(settings.scheduler_tick_interval_s)
        finally:
            probes.cancel()
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the deployment scheduler loop")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    parser.add_argument("--bootstrap-schema", action="store_true", help="create tables before starting (dev only)")
    args = parser.parse_args()
    asyncio.run(_main(once=args.once, bootstrap_schema=args.bootstrap_schema))


if __name__ == "__main__":
    main()
