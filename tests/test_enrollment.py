import pytest

from surveygate.enrollment import (
    ACTIVE,
    APPROVED,
    INVITED,
    PENDING,
    REMOVED,
    ensure_token_usable,
    has_live_token,
    is_token_allowed,
    state_after_start,
    state_after_submit,
    usage_exhausted,
)
from surveygate.errors import TokenUsedError


@pytest.mark.parametrize("state", [INVITED, PENDING, APPROVED, ACTIVE])
def test_usable_states(state):
    assert is_token_allowed(state)


@pytest.mark.parametrize("state", [REMOVED, None, "unknown"])
def test_unusable_states(state):
    assert not is_token_allowed(state)


def test_start_moves_invited_to_pending_only():
    assert state_after_start(INVITED) == PENDING
    assert state_after_start(PENDING) == PENDING
    assert state_after_start(APPROVED) == APPROVED


def test_submit_transitions():
    assert state_after_submit(INVITED) == APPROVED
    assert state_after_submit(PENDING) == APPROVED
    assert state_after_submit(APPROVED) == ACTIVE
    assert state_after_submit(ACTIVE) == ACTIVE


def test_usage_limit():
    assert not usage_exhausted(1, 0)
    assert usage_exhausted(1, 1)
    assert usage_exhausted(2, 3)
    assert not usage_exhausted(0, 1000)


def test_ensure_token_usable_raises_when_exhausted():
    ensure_token_usable({"id": "e1", "use_limit": 2, "used_count": 1})
    with pytest.raises(TokenUsedError):
        ensure_token_usable({"id": "e1", "use_limit": 2, "used_count": 2})


def test_live_token_requires_hash_and_usable_state():
    assert has_live_token({"state": INVITED, "token_hash": "abc"})
    assert not has_live_token({"state": INVITED, "token_hash": None})
    assert not has_live_token({"state": REMOVED, "token_hash": "abc"})
