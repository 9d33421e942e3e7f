from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from surveygate.errors import ScheduleInvalidError, StatusTransitionError
from surveygate.lifecycle import (
    ARCHIVED,
    CLOSED,
    DRAFT,
    OPEN,
    check_transition,
    initial_status,
    validate_schedule,
)


def test_schedule_accepts_open_ended_surveys():
    validate_schedule(None, None, FIXED_NOW)
    validate_schedule(FIXED_NOW, None, FIXED_NOW)
    validate_schedule(None, FIXED_NOW + timedelta(days=1), FIXED_NOW)


def test_schedule_rejects_end_not_after_start():
    with pytest.raises(ScheduleInvalidError):
        validate_schedule(FIXED_NOW + timedelta(days=1), FIXED_NOW + timedelta(days=1), FIXED_NOW)
    with pytest.raises(ScheduleInvalidError):
        validate_schedule(FIXED_NOW + timedelta(days=2), FIXED_NOW + timedelta(days=1), FIXED_NOW)


def test_schedule_rejects_end_in_the_past():
    with pytest.raises(ScheduleInvalidError):
        validate_schedule(None, FIXED_NOW - timedelta(seconds=1), FIXED_NOW)


def test_schedule_accepts_end_equal_to_now():
    validate_schedule(None, FIXED_NOW, FIXED_NOW)


def test_initial_status_defaults_to_draft():
    assert initial_status(None, None, FIXED_NOW) == DRAFT
    assert initial_status(None, FIXED_NOW + timedelta(days=3), FIXED_NOW) == DRAFT


def test_initial_status_opens_surveys_starting_today():
    assert initial_status(None, FIXED_NOW, FIXED_NOW) == OPEN
    assert initial_status(DRAFT, FIXED_NOW, FIXED_NOW) == OPEN


@pytest.mark.parametrize("status", [CLOSED, ARCHIVED])
def test_initial_status_keeps_explicit_terminal_status(status):
    assert initial_status(status, FIXED_NOW, FIXED_NOW) == status


def test_initial_status_rejects_unknown_status():
    with pytest.raises(StatusTransitionError):
        initial_status("paused", None, FIXED_NOW)


@pytest.mark.parametrize(
    "current,target",
    [(DRAFT, OPEN), (OPEN, CLOSED), (CLOSED, OPEN), (OPEN, ARCHIVED), (OPEN, OPEN)],
)
def test_allowed_transitions(current, target):
    check_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [(ARCHIVED, OPEN), (ARCHIVED, DRAFT), (OPEN, DRAFT), (CLOSED, "paused")],
)
def test_rejected_transitions(current, target):
    with pytest.raises(StatusTransitionError):
        check_transition(current, target)
