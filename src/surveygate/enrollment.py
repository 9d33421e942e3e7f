from __future__ import annotations

from typing import Any

from surveygate.errors import TokenUsedError

INVITED = "invited"
PENDING = "pending"
APPROVED = "approved"
ACTIVE = "active"
REMOVED = "removed"

STATES = (INVITED, PENDING, APPROVED, ACTIVE, REMOVED)
USABLE_STATES = frozenset({INVITED, PENDING, APPROVED, ACTIVE})

DEFAULT_USE_LIMIT = 1


def is_token_allowed(state: str | None) -> bool:
    return state in USABLE_STATES


def state_after_start(state: str) -> str:
    if state == INVITED:
        return PENDING
    return state


def state_after_submit(state: str) -> str:
    if state in (INVITED, PENDING):
        return APPROVED
    if state == APPROVED:
        return ACTIVE
    return state


def usage_exhausted(use_limit: int, used_count: int) -> bool:
    return use_limit > 0 and used_count >= use_limit


def ensure_token_usable(enrollment: dict[str, Any]) -> None:
    if usage_exhausted(enrollment.get("use_limit", 0), enrollment.get("used_count", 0)):
        raise TokenUsedError(f"enrollment {enrollment.get('id')} reached its usage limit")


def has_live_token(enrollment: dict[str, Any]) -> bool:
    return is_token_allowed(enrollment.get("state")) and bool(enrollment.get("token_hash"))
