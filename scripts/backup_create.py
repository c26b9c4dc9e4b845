from __future__ import annotations

import argparse
import asyncio

from nexusdb.core.config import get_settings
from nexusdb.core.logging import configure_logging
from nexusdb.domain.state import BackupType
from nexusdb.runtime import start_runtime


async def _run_backup(deployment_id: str, backup_type: str, wait: bool) -> None:
    # Execute a backup for one deployment from the CLI for operator workflows.
    configure_logging()
    runtime = await start_runtime(get_settings(), recover=False)
    try:
        backup = await runtime.orchestrator.create_backup(deployment_id, BackupType(backup_type), wait=wait)
        print(f"backup_id={backup.id}")
        print(f"status={backup.status}")
        print(f"location={backup.location}")
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a deployment backup")
    parser.add_argument("deployment_id")
    parser.add_argument("--type", default=BackupType.FULL.value, choices=[item.value for item in BackupType])
    parser.add_argument("--wait", action="store_true", help="queue behind an in-flight operation instead of failing")
    args = parser.parse_args()
    asyncio.run(_run_backup(args.deployment_id, args.type, args.wait))


if __name__ == "__main__":
    main()
