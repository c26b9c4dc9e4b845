from __future__ import annotations

from datetime import datetime, timedelta

from croniter import croniter

from nexusdb.core.errors import ValidationError


def validate_cron(expression: str) -> str:
    normalized = " ".join(expression.split())
    if not normalized or not croniter.is_valid(normalized):
        raise ValidationError(f"invalid cron expression: {expression!r}")
    return normalized


def latest_slot(expression: str, now: datetime) -> datetime:
    # Most recent fire time at or before now.
    return croniter(expression, now + timedelta(seconds=1)).get_prev(datetime)


def next_slot(expression: str, after: datetime) -> datetime:
    return croniter(expression, after).get_next(datetime)


def due_slot(expression: str, *, last_slot: datetime | None, anchor: datetime, now: datetime) -> datetime | None:
    # Missed recurrences collapse into the single latest slot; None when nothing is due.
    latest = latest_slot(expression, now)
    if latest <= (last_slot or anchor):
        return None
    return latest


def active_window_start(expression: str, duration_seconds: int, now: datetime) -> datetime | None:
    start = latest_slot(expression, now)
    if now < start + timedelta(seconds=duration_seconds):
        return start
    return None


def slot_key(slot: datetime) -> str:
    return slot.replace(microsecond=0).isoformat()
