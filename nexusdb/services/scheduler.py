from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Awaitable, Callable

from nexusdb.core.clock import TimeProvider, as_utc, utc_now
from nexusdb.core.config import Settings
from nexusdb.core.errors import (
    BackupFailure,
    InvalidStateTransitionError,
    NexusDBError,
    NotFoundError,
    ScalingConflictError,
    ValidationError,
)
from nexusdb.domain.events import Event
from nexusdb.domain.models import (
    BackupRecord,
    BackupSchedule,
    DeploymentRecord,
    MaintenanceWindow,
    ScalingWindow,
    new_id,
)
from nexusdb.domain.state import BackupType, DeploymentState, Environment
from nexusdb.persistence.db import SessionFactory, session_scope
from nexusdb.persistence.repos import scaling as scaling_repo
from nexusdb.persistence.repos import schedules as schedules_repo
from nexusdb.services import cron
from nexusdb.services.events import EventBus
from nexusdb.services.orchestrator import Orchestrator
from nexusdb.services.scaling import clamp_replicas, validate_bounds
from nexusdb.services.telemetry import HealthSnapshotStore, increment_counter


logger = logging.getLogger(__name__)

# Deployments in these states will never serve again; their schedules are discarded.
_DISCARD_STATES = frozenset(
    {DeploymentState.DESTROYED.value, DeploymentState.FAILED.value, DeploymentState.DECOMMISSIONING.value}
)


@dataclass
class TickReport:
    started_at: datetime
    backups_fired: int = 0
    backups_discarded: int = 0
    decommissioned: int = 0
    windows_applied: int = 0
    windows_reverted: int = 0
    autoscaled: int = 0
    backups_pruned: int = 0
    deployments_purged: int = 0
    orphans_released: int = 0
    snapshots_pruned: int = 0
    errors: list[str] = field(default_factory=list)


class Scheduler:
    """Time- and event-driven automation on top of the orchestrator.

    Every action goes through an orchestrator operation, so scheduled work
    queues behind user-issued mutations on the same deployment lock. Each job
    of a tick is isolated: one failing job is logged and the others still run.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        sessions: SessionFactory,
        orchestrator: Orchestrator,
        events: EventBus,
        snapshots: HealthSnapshotStore,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._orchestrator = orchestrator
        self._snapshots = snapshots
        self._now = time_provider or utc_now
        self._subscription = events.subscribe(["deployment.active", "deployment.destroyed", "deployment.failed"])
        self._tick_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    # schedule management

    async def add_backup_schedule(
        self,
        deployment_id: str,
        expression: str,
        backup_type: BackupType | str = BackupType.FULL,
    ) -> BackupSchedule:
        expression = cron.validate_cron(expression)
        backup_type = BackupType(backup_type)
        await self._require_live(deployment_id)
        now = self._now()
        schedule = BackupSchedule(
            id=new_id(),
            deployment_id=deployment_id,
            cron=expression,
            backup_type=backup_type.value,
            enabled=True,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._sessions) as session:
            session.add(schedule)
        logger.info(
            "backup_schedule_added schedule_id=%s deployment_id=%s cron=%r type=%s",
            schedule.id,
            deployment_id,
            expression,
            backup_type.value,
        )
        return schedule

    async def add_scaling_window(
        self,
        deployment_id: str,
        expression: str,
        duration_seconds: int,
        replicas: int,
    ) -> ScalingWindow:
        expression = cron.validate_cron(expression)
        if duration_seconds <= 0:
            raise ValidationError("scaling window duration must be positive")
        record = await self._require_live(deployment_id)
        async with self._sessions() as session:
            policy = await scaling_repo.get_policy(session, deployment_id)
        # Scheduled targets obey the same bounds as manual and reactive scaling.
        validate_bounds(policy, replicas, quota_max_replicas=self._settings.quota_max_replicas)
        now = self._now()
        window = ScalingWindow(
            id=new_id(),
            deployment_id=deployment_id,
            cron=expression,
            duration_seconds=duration_seconds,
            replicas=replicas,
            baseline_replicas=record.replicas,
            reverted=True,
            enabled=True,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._sessions) as session:
            session.add(window)
        logger.info(
            "scaling_window_added window_id=%s deployment_id=%s cron=%r duration_s=%s replicas=%s",
            window.id,
            deployment_id,
            expression,
            duration_seconds,
            replicas,
        )
        return window

    async def add_maintenance_window(self, deployment_id: str, expression: str, duration_seconds: int) -> MaintenanceWindow:
        expression = cron.validate_cron(expression)
        if duration_seconds <= 0:
            raise ValidationError("maintenance window duration must be positive")
        await self._require_live(deployment_id)
        now = self._now()
        window = MaintenanceWindow(
            id=new_id(),
            deployment_id=deployment_id,
            cron=expression,
            duration_seconds=duration_seconds,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._sessions) as session:
            session.add(window)
        logger.info("maintenance_window_added window_id=%s deployment_id=%s cron=%r", window.id, deployment_id, expression)
        return window

    async def list_backup_schedules(self, deployment_id: str) -> list[BackupSchedule]:
        async with self._sessions() as session:
            return await schedules_repo.list_schedules_for_deployment(session, deployment_id)

    async def disable_schedules(self, deployment_id: str) -> int:
        disabled = 0
        async with session_scope(self._sessions) as session:
            for schedule in await schedules_repo.list_schedules_for_deployment(session, deployment_id):
                if schedule.enabled:
                    schedule.enabled = False
                    disabled += 1
            for window in await schedules_repo.list_scaling_windows(session):
                if window.deployment_id == deployment_id:
                    window.enabled = False
                    disabled += 1
        if disabled:
            logger.info("schedules_disabled deployment_id=%s count=%s", deployment_id, disabled)
        return disabled

    async def _require_live(self, deployment_id: str) -> DeploymentRecord:
        record = await self._orchestrator.get_deployment(deployment_id)
        if record.state in _DISCARD_STATES:
            raise InvalidStateTransitionError(f"deployment {deployment_id} is {record.state}; schedules need a live deployment")
        return record

    # backups

    async def fire_backup(self, schedule: BackupSchedule, slot: datetime) -> BackupRecord | None:
        """Run the backup for one schedule slot.

        Safe to call repeatedly for the same slot: the slot key is unique per
        deployment, so a second call returns the record created by the first.
        Returns None when the deployment is gone and the slot is discarded.
        """
        try:
            record = await self._orchestrator.get_deployment(schedule.deployment_id)
        except NotFoundError:
            record = None
        if record is None or record.state in _DISCARD_STATES:
            logger.info(
                "scheduled_backup_discarded schedule_id=%s deployment_id=%s slot=%s",
                schedule.id,
                schedule.deployment_id,
                cron.slot_key(slot),
            )
            increment_counter("scheduled_backups_discarded_total")
            return None
        backup = await self._orchestrator.create_backup(
            schedule.deployment_id,
            BackupType(schedule.backup_type),
            schedule_slot=cron.slot_key(slot),
            wait=True,
        )
        increment_counter("scheduled_backups_fired_total")
        return backup

    async def _advance_schedule(self, schedule_id: str, slot: datetime, *, disable: bool = False) -> None:
        async with session_scope(self._sessions) as session:
            stored = await schedules_repo.get_backup_schedule(session, schedule_id)
            if stored is None:
                return
            stored.last_slot_at = slot
            if disable:
                stored.enabled = False

    async def _run_schedule(self, schedule: BackupSchedule, slot: datetime, report: TickReport) -> None:
        try:
            backup = await self.fire_backup(schedule, slot)
        except BackupFailure as exc:
            # The failed record already exists for this slot; move on to the next one.
            logger.warning("scheduled_backup_failed schedule_id=%s slot=%s error=%s", schedule.id, cron.slot_key(slot), exc)
            await self._advance_schedule(schedule.id, slot)
            return
        except (ScalingConflictError, InvalidStateTransitionError) as exc:
            # Leave the slot due; the next tick retries it.
            logger.info("scheduled_backup_deferred schedule_id=%s slot=%s reason=%s", schedule.id, cron.slot_key(slot), exc)
            return
        if backup is None:
            report.backups_discarded += 1
            await self._advance_schedule(schedule.id, slot, disable=True)
            return
        report.backups_fired += 1
        await self._advance_schedule(schedule.id, slot)

    async def run_backups(self, now: datetime, report: TickReport) -> None:
        async with self._sessions() as session:
            schedules = await schedules_repo.list_backup_schedules(session)
        due: list[tuple[BackupSchedule, datetime]] = []
        for schedule in schedules:
            # Missed recurrences collapse into one run for the latest slot.
            slot = cron.due_slot(
                schedule.cron,
                last_slot=as_utc(schedule.last_slot_at),
                anchor=as_utc(schedule.created_at),
                now=now,
            )
            if slot is not None:
                due.append((schedule, slot))
        # Concurrency across deployments is bounded by the backup bulkhead.
        await asyncio.gather(*(self._run_schedule(schedule, slot, report) for schedule, slot in due))

    # TTL

    async def run_ttl_cleanup(self, now: datetime, report: TickReport) -> None:
        for record in await self._orchestrator.list_expired_deployments(now):
            try:
                await self._orchestrator.decommission(record.id, reason="ttl expired")
            except (ScalingConflictError, InvalidStateTransitionError) as exc:
                logger.info("ttl_decommission_deferred deployment_id=%s reason=%s", record.id, exc)
                continue
            report.decommissioned += 1
            logger.info("ttl_decommission_requested deployment_id=%s expires_at=%s", record.id, record.expires_at)

    # scaling windows

    async def run_scaling_windows(self, now: datetime, report: TickReport) -> None:
        async with self._sessions() as session:
            windows = await schedules_repo.list_scaling_windows(session)
        for window in windows:
            start = cron.active_window_start(window.cron, window.duration_seconds, now)
            try:
                if start is not None and as_utc(window.applied_slot_at) != start:
                    await self._apply_window(window, start)
                    report.windows_applied += 1
                elif start is None and not window.reverted:
                    await self._revert_window(window)
                    report.windows_reverted += 1
            except (ScalingConflictError, InvalidStateTransitionError) as exc:
                logger.info("scaling_window_deferred window_id=%s reason=%s", window.id, exc)

    async def _apply_window(self, window: ScalingWindow, start: datetime) -> None:
        record = await self._orchestrator.get_deployment(window.deployment_id)
        if record.state != DeploymentState.ACTIVE.value:
            raise InvalidStateTransitionError(f"deployment {record.id} is {record.state}")
        policy = await self._orchestrator.get_scaling_policy(record.id)
        target = clamp_replicas(policy, window.replicas) if policy is not None else window.replicas
        baseline = record.replicas if window.reverted else window.baseline_replicas
        if target != record.replicas:
            await self._orchestrator.scale(record.id, target, trigger="scheduled", wait=True)
        async with session_scope(self._sessions) as session:
            stored = await schedules_repo.get_scaling_window(session, window.id)
            if stored is not None:
                stored.applied_slot_at = start
                stored.baseline_replicas = baseline
                stored.reverted = False
        logger.info(
            "scaling_window_applied window_id=%s deployment_id=%s replicas=%s baseline=%s",
            window.id,
            record.id,
            target,
            baseline,
        )

    async def _revert_window(self, window: ScalingWindow) -> None:
        record = await self._orchestrator.get_deployment(window.deployment_id)
        if record.state == DeploymentState.ACTIVE.value:
            policy = await self._orchestrator.get_scaling_policy(record.id)
            target = clamp_replicas(policy, window.baseline_replicas) if policy is not None else window.baseline_replicas
            if target != record.replicas:
                await self._orchestrator.scale(record.id, target, trigger="scheduled", wait=True)
        elif record.state not in _DISCARD_STATES:
            raise InvalidStateTransitionError(f"deployment {record.id} is {record.state}")
        async with session_scope(self._sessions) as session:
            stored = await schedules_repo.get_scaling_window(session, window.id)
            if stored is not None:
                stored.reverted = True
        logger.info("scaling_window_reverted window_id=%s deployment_id=%s", window.id, record.id)

    # autoscaling

    async def run_autoscaling(self, report: TickReport) -> None:
        async with self._sessions() as session:
            policies = await scaling_repo.list_policies(session)
            windows = await schedules_repo.list_scaling_windows(session)
        # An applied window pins the replica count until it is reverted.
        pinned = {window.deployment_id for window in windows if not window.reverted}
        for policy in policies:
            if policy.deployment_id in pinned:
                continue
            try:
                decision = await self._orchestrator.evaluate_autoscaling(policy.deployment_id)
            except ScalingConflictError:
                continue
            except NexusDBError as exc:
                logger.warning("autoscaling_failed deployment_id=%s error=%s", policy.deployment_id, exc)
                continue
            if decision.action != "none":
                report.autoscaled += 1

    # maintenance

    async def run_maintenance(self, now: datetime, report: TickReport) -> None:
        report.backups_pruned = len(await self._orchestrator.prune_backups(now))
        report.deployments_purged = len(await self._orchestrator.purge_destroyed(now))
        report.orphans_released = await self._orchestrator.sweep_orphans()
        report.snapshots_pruned = self._snapshots.prune(now)

    # events

    async def process_pending_events(self) -> int:
        handled = 0
        while True:
            event = self._subscription.get_nowait()
            if event is None:
                return handled
            await self._handle_event(event)
            handled += 1

    async def _handle_event(self, event: Event) -> None:
        deployment_id = event.deployment_id
        if deployment_id is None:
            return
        if event.type in ("deployment.destroyed", "deployment.failed"):
            await self.disable_schedules(deployment_id)
            return
        if event.type == "deployment.active" and self._settings.default_backup_cron:
            try:
                record = await self._orchestrator.get_deployment(deployment_id)
            except NotFoundError:
                return
            if record.environment != Environment.PROD.value:
                return
            if await self.list_backup_schedules(deployment_id):
                return
            await self.add_backup_schedule(deployment_id, self._settings.default_backup_cron, BackupType.FULL)

    # loop

    async def _guard(self, job: str, report: TickReport, run: Callable[[], Awaitable[None]]) -> None:
        try:
            await run()
        except Exception as exc:  # noqa: BLE001 - one failing job must not starve the others
            logger.exception("scheduler_job_failed job=%s", job)
            increment_counter(f"scheduler_job_failures_total.{job}")
            report.errors.append(f"{job}: {exc}")

    async def tick(self, now: datetime | None = None) -> TickReport:
        now = now or self._now()
        report = TickReport(started_at=now)
        async with self._tick_lock:
            await self._guard("events", report, self.process_pending_events)
            await self._guard("backups", report, lambda: self.run_backups(now, report))
            await self._guard("ttl", report, lambda: self.run_ttl_cleanup(now, report))
            await self._guard("scaling_windows", report, lambda: self.run_scaling_windows(now, report))
            await self._guard("autoscaling", report, lambda: self.run_autoscaling(report))
            await self._guard("maintenance", report, lambda: self.run_maintenance(now, report))
        logger.info(
            "scheduler_tick backups=%s discarded=%s decommissioned=%s windows_applied=%s windows_reverted=%s "
            "autoscaled=%s errors=%s",
            report.backups_fired,
            report.backups_discarded,
            report.decommissioned,
            report.windows_applied,
            report.windows_reverted,
            report.autoscaled,
            len(report.errors),
        )
        return report

    async def run_forever(self, interval_s: float | None = None) -> None:
        interval = interval_s if interval_s is not None else self._settings.scheduler_tick_interval_s
        self._stop.clear()
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except TimeoutError:
                continue

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self._subscription.close()
