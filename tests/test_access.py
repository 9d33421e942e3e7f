from datetime import timedelta

import pytest

from surveygate.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenNotYetValidError,
    TokenUsedError,
)
from surveygate.tokens import EnrollmentTokenPayload, TokenCodec


def _token(created):
    return created["invitations"][0]["token"]


def test_resolve_returns_survey_and_enrollment(service, make_survey):
    created = make_survey()
    access = service.access.resolve(_token(created))

    assert access["survey"]["id"] == created["survey"]["id"]
    assert access["enrollment"]["id"] == created["invitations"][0]["enrollment_id"]


def test_resolve_rejects_empty_token(service):
    with pytest.raises(InvalidTokenError):
        service.access.resolve("")


def test_resolve_rejects_token_signed_with_other_secret(service, make_survey, clock):
    created = make_survey()
    enrollment_id = created["invitations"][0]["enrollment_id"]
    other = TokenCodec("some-other-secret-with-enough-bytes")
    forged = other.issue(
        EnrollmentTokenPayload(
            survey_id=created["survey"]["id"],
            enrollment_id=enrollment_id,
            owner_id="owner-1",
        ),
        now=clock.now,
    )
    with pytest.raises(InvalidTokenError):
        service.access.resolve(forged.token)


def test_resolve_rejects_expired_token(service, make_survey, clock):
    created = make_survey()
    clock.advance(days=7, seconds=1)
    with pytest.raises(TokenExpiredError):
        service.access.resolve(_token(created))


def test_token_is_valid_until_survey_end(service, make_survey, clock):
    created = make_survey()
    clock.advance(days=7)
    assert service.access.resolve(_token(created))["survey"]["id"] == created["survey"]["id"]


def test_resolve_rejects_survey_that_has_not_started(service, make_survey, clock):
    created = make_survey(starts_at=clock.now + timedelta(days=2))
    with pytest.raises(TokenNotYetValidError):
        service.access.resolve(_token(created))

    clock.advance(days=2)
    service.access.resolve(_token(created))


def test_removed_enrollment_token_never_resolves(service, make_survey):
    created = make_survey()
    invitation = created["invitations"][0]
    service.remove_participant("owner-1", created["survey"]["id"], invitation["enrollment_id"])

    with pytest.raises(InvalidTokenError):
        service.access.resolve(invitation["token"])


def test_reissue_invalidates_previous_token(service, make_survey):
    created = make_survey()
    old = created["invitations"][0]
    fresh = service.reissue_token("owner-1", created["survey"]["id"], old["enrollment_id"])

    assert fresh["token"] != old["token"]
    with pytest.raises(InvalidTokenError):
        service.access.resolve(old["token"])
    assert service.access.resolve(fresh["token"])["enrollment"]["id"] == old["enrollment_id"]


def test_usage_check_is_separate_from_resolution(service, make_survey):
    created = make_survey()
    token = _token(created)
    service.submit_response(token, {"answers": [{"question_code": "q1", "value_text": "yes"}]})

    access = service.access.resolve(token)
    assert access["enrollment"]["used_count"] == 1
    with pytest.raises(TokenUsedError):
        service.access.resolve_usable(token)
