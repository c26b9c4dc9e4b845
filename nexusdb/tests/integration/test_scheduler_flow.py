from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from nexusdb.core.errors import ConfigurationError, NotFoundError, ValidationError
from nexusdb.tests.utils.deployments import decommission_settled, deploy_active


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 5, hour, minute, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fire_backup_is_idempotent_per_slot(runtime) -> None:
    record = await deploy_active(runtime.orchestrator)
    schedule = await runtime.scheduler.add_backup_schedule(record.id, "0 2 * * *")

    first = await runtime.scheduler.fire_backup(schedule, _at(2))
    again = await runtime.scheduler.fire_backup(schedule, _at(2))

    assert first is not None and again is not None
    assert again.id == first.id
    assert first.schedule_slot == "2026-01-05T02:00:00+00:00"
    assert len(await runtime.orchestrator.list_backups(record.id)) == 1


@pytest.mark.asyncio
async def test_missed_slots_collapse_into_one_backup(runtime, clock) -> None:
    record = await deploy_active(runtime.orchestrator)
    await runtime.scheduler.add_backup_schedule(record.id, "0 * * * *", "full")

    clock.advance(hours=5)
    report = await runtime.scheduler.tick()
    assert report.backups_fired == 1
    assert report.errors == []
    [backup] = await runtime.orchestrator.list_backups(record.id)
    assert backup.schedule_slot == "2026-01-05T06:00:00+00:00"

    # Nothing new is due until the next hour.
    assert (await runtime.scheduler.tick()).backups_fired == 0
    clock.advance(hours=1)
    assert (await runtime.scheduler.tick()).backups_fired == 1


@pytest.mark.asyncio
async def test_schedules_are_discarded_with_the_deployment(runtime) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    schedule = await runtime.scheduler.add_backup_schedule(record.id, "0 2 * * *")
    await decommission_settled(orchestrator, record.id)

    assert await runtime.scheduler.fire_backup(schedule, _at(2)) is None
    await runtime.scheduler.tick()
    [stored] = await runtime.scheduler.list_backup_schedules(record.id)
    assert stored.enabled is False
    assert await orchestrator.list_backups(record.id) == []


@pytest.mark.asyncio
async def test_invalid_schedules_are_rejected(runtime) -> None:
    record = await deploy_active(runtime.orchestrator)
    with pytest.raises(ValidationError):
        await runtime.scheduler.add_backup_schedule(record.id, "not a cron")
    with pytest.raises(ValidationError):
        await runtime.scheduler.add_scaling_window(record.id, "0 3 * * *", 0, 2)
    with pytest.raises(ValidationError):
        await runtime.scheduler.add_maintenance_window(record.id, "61 * * * *", 600)
    with pytest.raises(NotFoundError):
        await runtime.scheduler.add_backup_schedule("missing", "0 2 * * *")


@pytest.mark.asyncio
async def test_ttl_expiry_decommissions(runtime, clock) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator, ttl_seconds=3600)
    assert record.expires_at is not None

    assert (await runtime.scheduler.tick()).decommissioned == 0
    clock.advance(hours=2)
    report = await runtime.scheduler.tick()
    assert report.decommissioned == 1
    await orchestrator.wait_for_idle(timeout=10)
    assert (await orchestrator.get_deployment(record.id)).state == "destroyed"


@pytest.mark.asyncio
async def test_scaling_window_applies_and_reverts(runtime, clock) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    await runtime.scheduler.add_scaling_window(record.id, "0 3 * * *", 3600, 3)

    clock.set(_at(3, 30))
    report = await runtime.scheduler.tick()
    assert report.windows_applied == 1
    assert (await orchestrator.get_deployment(record.id)).replicas == 3

    clock.set(_at(3, 45))
    assert (await runtime.scheduler.tick()).windows_applied == 0

    clock.set(_at(4, 30))
    report = await runtime.scheduler.tick()
    assert report.windows_reverted == 1
    assert (await orchestrator.get_deployment(record.id)).replicas == 1
    triggers = [event.trigger for event in await orchestrator.get_scaling_history(record.id)]
    assert triggers.count("scheduled") == 2


@pytest.mark.asyncio
async def test_maintenance_window_queues_conflicting_operations(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    # The frozen clock starts at 01:00, inside this window.
    await runtime.scheduler.add_maintenance_window(record.id, "0 1 * * *", 3600)
    assert await orchestrator.in_maintenance_window(record.id)

    substrate.set_delay("provision", 0.2)
    first = asyncio.create_task(orchestrator.scale(record.id, 2))
    await asyncio.sleep(0.05)
    assert orchestrator.is_busy(record.id)
    second = await orchestrator.scale(record.id, 3)
    assert (await first).current_replicas == 2
    assert second.previous_replicas == 2
    assert second.current_replicas == 3


@pytest.mark.asyncio
async def test_prod_deployments_get_a_default_backup_schedule(runtime, settings) -> None:
    settings.default_backup_cron = "0 2 * * *"
    orchestrator = runtime.orchestrator
    prod = await deploy_active(orchestrator, environment="prod")
    dev = await deploy_active(orchestrator)

    assert await runtime.scheduler.process_pending_events() >= 2
    [schedule] = await runtime.scheduler.list_backup_schedules(prod.id)
    assert schedule.cron == "0 2 * * *"
    assert schedule.backup_type == "full"
    assert await runtime.scheduler.list_backup_schedules(dev.id) == []


@pytest.mark.asyncio
async def test_destroyed_records_are_purged_later(runtime, clock, settings) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    await decommission_settled(orchestrator, record.id)

    assert (await runtime.scheduler.tick()).deployments_purged == 0
    clock.advance(seconds=settings.destroyed_purge_after_s + 1)
    assert (await runtime.scheduler.tick()).deployments_purged == 1
    with pytest.raises(NotFoundError):
        await orchestrator.get_deployment(record.id)


@pytest.mark.asyncio
async def test_orphan_sweep_releases_leaked_handles(runtime, substrate) -> None:
    orchestrator = runtime.orchestrator
    record = await deploy_active(orchestrator)
    substrate.fail_next("destroy", ConfigurationError("volume busy"))

    failed = await decommission_settled(orchestrator, record.id)
    assert failed.state == "failed"
    assert failed.substrate_handles == ["fake-0001"]
    assert substrate.allocated_handles() == ["fake-0001"]

    report = await runtime.scheduler.tick()
    assert report.orphans_released == 1
    assert substrate.allocated_handles() == []
    assert (await orchestrator.get_deployment(record.id)).substrate_handles == []


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_the_tick(runtime, clock, monkeypatch) -> None:
    record = await deploy_active(runtime.orchestrator)
    await runtime.scheduler.add_backup_schedule(record.id, "0 * * * *")

    async def broken_prune(now=None):
        raise RuntimeError("storage offline")

    monkeypatch.setattr(runtime.orchestrator, "prune_backups", broken_prune)
    clock.advance(hours=1)
    report = await runtime.scheduler.tick()
    assert report.backups_fired == 1
    assert report.errors == ["maintenance: storage offline"]
