from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from nexusdb.core.clock import TimeProvider, utc_now
from nexusdb.core.errors import InvalidStateTransitionError
from nexusdb.domain.models import DeploymentRecord, DeploymentTransition
from nexusdb.domain.state import SERVING_STATES, DeploymentState, can_transition
from nexusdb.services.events import EventBus
from nexusdb.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class DeploymentLifecycle:
    """Single mutation path for DeploymentRecord.state.

    Every change is checked against the state machine, appended to the
    transition log and published on the event bus.
    """

    def __init__(self, events: EventBus, *, time_provider: TimeProvider | None = None) -> None:
        self._events = events
        self._now = time_provider or utc_now

    async def transition(
        self,
        session: AsyncSession,
        record: DeploymentRecord,
        target: DeploymentState,
        *,
        reason: str | None = None,
    ) -> None:
        current = DeploymentState(record.state)
        if not can_transition(current, target):
            raise InvalidStateTransitionError(
                f"deployment {record.id} cannot move from {current.value} to {target.value}"
            )
        record.state = target.value
        record.updated_at = self._now()
        if target not in SERVING_STATES:
            # Endpoints are only published while the deployment can serve traffic.
            record.endpoints = []
        if target == DeploymentState.FAILED:
            record.failure_reason = reason
        if target == DeploymentState.DESTROYED:
            record.destroyed_at = self._now()
        session.add(
            DeploymentTransition(
                deployment_id=record.id,
                from_state=current.value,
                to_state=target.value,
                reason=reason,
                occurred_at=self._now(),
            )
        )
        await session.flush()
        increment_counter(f"deployment_transitions_total.{target.value}")
        log = logger.error if target == DeploymentState.FAILED else logger.info
        log(
            "deployment_state_changed deployment_id=%s from=%s to=%s reason=%s",
            record.id,
            current.value,
            target.value,
            reason,
        )
        self._events.emit(
            "deployment.state_changed",
            record.id,
            from_state=current.value,
            to_state=target.value,
            reason=reason,
        )
