from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from nexusdb.core.clock import utc_now


EventType = Literal[
    "deployment.state_changed",
    "deployment.stage_started",
    "deployment.stage_completed",
    "deployment.stage_failed",
    "deployment.active",
    "deployment.failed",
    "deployment.destroyed",
    "deployment.scaled",
    "backup.completed",
    "backup.failed",
    "tenant.created",
    "tenant.removed",
    "registry.entry_unhealthy",
    "registry.entry_recovered",
]


@dataclass(frozen=True)
class Event:
    type: EventType
    deployment_id: str | None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)
