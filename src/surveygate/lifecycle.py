from __future__ import annotations

from datetime import datetime

from surveygate.errors import ScheduleInvalidError, StatusTransitionError
from surveygate.utils import ensure_aware

DRAFT = "draft"
OPEN = "open"
CLOSED = "closed"
ARCHIVED = "archived"

STATUSES = (DRAFT, OPEN, CLOSED, ARCHIVED)
TERMINAL_FOR_AUTOCLOSE = frozenset({CLOSED, ARCHIVED})

TRANSITIONS: dict[str, frozenset[str]] = {
    DRAFT: frozenset({OPEN, CLOSED, ARCHIVED}),
    OPEN: frozenset({CLOSED, ARCHIVED}),
    CLOSED: frozenset({OPEN, ARCHIVED}),
    ARCHIVED: frozenset(),
}


def validate_schedule(
    starts_at: datetime | None, ends_at: datetime | None, now: datetime
) -> None:
    if starts_at is not None and ends_at is not None:
        if ensure_aware(ends_at) <= ensure_aware(starts_at):
            raise ScheduleInvalidError("ends_at must be after starts_at")
    if ends_at is not None and ensure_aware(ends_at) < ensure_aware(now):
        raise ScheduleInvalidError("ends_at must not be in the past")


def is_same_local_day(value: datetime, now: datetime) -> bool:
    local_value = ensure_aware(value).astimezone()
    local_now = ensure_aware(now).astimezone()
    return (
        local_value.year == local_now.year
        and local_value.timetuple().tm_yday == local_now.timetuple().tm_yday
    )


def initial_status(
    requested: str | None, starts_at: datetime | None, now: datetime
) -> str:
    status = requested or DRAFT
    if status not in STATUSES:
        raise StatusTransitionError(f"unknown survey status: {status}")
    if starts_at is not None and status not in TERMINAL_FOR_AUTOCLOSE:
        if is_same_local_day(starts_at, now):
            return OPEN
    return status


def check_transition(current: str, target: str) -> None:
    if target not in STATUSES:
        raise StatusTransitionError(f"unknown survey status: {target}")
    if current == target:
        return
    if target not in TRANSITIONS.get(current, frozenset()):
        raise StatusTransitionError(f"cannot move survey from {current} to {target}")
