from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from surveygate.errors import (
    ConflictError,
    NotFoundError,
    ParticipantExistsError,
    ParticipantLimitError,
    ParticipantNotFoundError,
    ResponseNotFoundError,
    ScheduleInvalidError,
    StatusTransitionError,
    TemplateSchemaError,
    TokenExpiredError,
    TokenUsedError,
)

ANSWERS = {"answers": [{"question_code": "q1", "value_text": "yes"}]}


def test_survey_starting_today_opens_and_closes_after_last_submission(service, make_survey, clock):
    created = make_survey()
    survey = created["survey"]
    invitation = created["invitations"][0]

    assert survey["status"] == "open"
    assert invitation["expires_at"] == clock.now + timedelta(days=7)

    result = service.submit_response(invitation["token"], ANSWERS)

    assert result["enrollment"]["used_count"] == 1
    assert result["enrollment"]["state"] == "approved"
    assert "token_hash" not in result["enrollment"]
    assert service.get_survey("owner-1", survey["id"])["survey"]["status"] == "closed"


def test_survey_without_start_stays_draft(make_survey):
    created = make_survey(starts_at=None)
    assert created["survey"]["status"] == "draft"


def test_survey_snapshots_template_schema(make_survey, template):
    survey = make_survey()["survey"]
    assert survey["form_snapshot_json"] == template["published_schema_json"]
    assert survey["snapshot_version"] == template["version"]


def test_create_with_invalid_schedule_writes_nothing(service, make_survey, clock):
    with pytest.raises(ScheduleInvalidError):
        make_survey(starts_at=clock.now + timedelta(days=2), ends_at=clock.now + timedelta(days=1))
    assert service.list_surveys("owner-1") == []


def test_update_with_invalid_schedule_writes_nothing(service, make_survey, clock):
    survey = make_survey()["survey"]
    with pytest.raises(ScheduleInvalidError):
        service.update_survey("owner-1", survey["id"], {"ends_at": clock.now - timedelta(hours=1)})
    assert service.get_survey("owner-1", survey["id"])["survey"]["ends_at"] == survey["ends_at"]


def test_update_rejects_invalid_status_transition(service, make_survey):
    survey = make_survey()["survey"]
    service.update_survey("owner-1", survey["id"], {"status": "archived"})
    with pytest.raises(StatusTransitionError):
        service.update_survey("owner-1", survey["id"], {"status": "open"})


def test_extending_survey_end_pushes_live_tokens(service, make_survey, clock):
    created = make_survey()
    survey = created["survey"]
    new_end = clock.now + timedelta(days=14)

    updated = service.update_survey("owner-1", survey["id"], {"ends_at": new_end})

    assert updated["ends_at"] == new_end
    enrollments = service.get_survey("owner-1", survey["id"])["enrollments"]
    assert [item["token_expires_at"] for item in enrollments] == [new_end]
    clock.advance(days=10)
    service.access.resolve(created["invitations"][0]["token"])


def test_use_limit_allows_exactly_n_submissions(service, make_survey):
    created = make_survey(
        participants=[
            {"full_name": "Ada Lovelace", "email": "ada@example.com", "use_limit": 3},
            {"full_name": "Alan Turing", "email": "alan@example.com"},
        ]
    )
    token = created["invitations"][0]["token"]

    states = []
    for expected in (1, 2, 3):
        result = service.submit_response(token, ANSWERS)
        assert result["enrollment"]["used_count"] == expected
        states.append(result["enrollment"]["state"])

    assert states == ["approved", "active", "active"]
    with pytest.raises(TokenUsedError):
        service.submit_response(token, ANSWERS)
    assert created["survey"]["status"] == "open"
    assert service.get_survey("owner-1", created["survey"]["id"])["survey"]["status"] == "open"


def test_unlimited_token(service, make_survey):
    created = make_survey(participants=[{"full_name": "Ada Lovelace", "use_limit": 0}])
    token = created["invitations"][0]["token"]
    for _ in range(5):
        service.submit_response(token, ANSWERS)
    assert service.access.resolve_usable(token)["enrollment"]["used_count"] == 5


def test_concurrent_submissions_consume_single_use_once(service, make_survey):
    created = make_survey()
    token = created["invitations"][0]["token"]

    def submit():
        try:
            service.submit_response(token, ANSWERS)
        except TokenUsedError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(lambda _: submit(), range(4)))

    assert outcomes.count(True) == 1
    enrollment_id = created["invitations"][0]["enrollment_id"]
    result = service.get_enrollment_result("owner-1", created["survey"]["id"], enrollment_id)
    assert result["enrollment"]["used_count"] == 1


def test_remove_participant_twice_reports_not_found(service, make_survey):
    created = make_survey()
    survey_id = created["survey"]["id"]
    enrollment_id = created["invitations"][0]["enrollment_id"]

    service.remove_participant("owner-1", survey_id, enrollment_id)
    with pytest.raises(ParticipantNotFoundError):
        service.remove_participant("owner-1", survey_id, enrollment_id)

    enrollment = service.get_survey("owner-1", survey_id)["enrollments"][0]
    assert enrollment["state"] == "removed"
    assert enrollment["token_expires_at"] is None


def test_add_participant_rejects_duplicate_email(service, make_survey):
    survey_id = make_survey()["survey"]["id"]
    with pytest.raises(ParticipantExistsError):
        service.add_participants("owner-1", survey_id, [{"full_name": "Ada", "email": "ADA@example.com"}])


def test_removed_participant_email_can_be_enrolled_again(service, make_survey):
    created = make_survey()
    survey_id = created["survey"]["id"]
    service.remove_participant("owner-1", survey_id, created["invitations"][0]["enrollment_id"])

    invitations = service.add_participants(
        "owner-1", survey_id, [{"full_name": "Ada Lovelace", "email": "ada@example.com"}]
    )
    assert len(invitations) == 1


def test_participant_limit(service, make_survey):
    survey_id = make_survey(max_participants=1)["survey"]["id"]
    with pytest.raises(ParticipantLimitError):
        service.add_participants("owner-1", survey_id, [{"full_name": "Alan Turing"}])


def test_create_rejects_more_participants_than_allowed(make_survey):
    with pytest.raises(ParticipantLimitError):
        make_survey(
            max_participants=1,
            participants=[{"full_name": "Ada"}, {"full_name": "Alan"}],
        )


def test_added_participant_token_expires_with_survey(service, make_survey, clock):
    survey_id = make_survey()["survey"]["id"]
    invitation = service.add_participants("owner-1", survey_id, [{"full_name": "Alan Turing"}])[0]
    assert invitation["expires_at"] == clock.now + timedelta(days=7)
    assert service.access.resolve(invitation["token"])["enrollment"]["full_name"] == "Alan Turing"


def test_extend_token(service, make_survey, clock):
    created = make_survey()
    survey_id = created["survey"]["id"]
    enrollment_id = created["invitations"][0]["enrollment_id"]
    target = clock.now + timedelta(days=3)

    extended = service.extend_token("owner-1", survey_id, enrollment_id, target)
    assert extended["expires_at"] == target

    with pytest.raises(ScheduleInvalidError):
        service.extend_token("owner-1", survey_id, enrollment_id, clock.now + timedelta(days=8))
    with pytest.raises(ScheduleInvalidError):
        service.extend_token("owner-1", survey_id, enrollment_id, clock.now - timedelta(minutes=1))


def test_other_owner_cannot_see_survey(service, make_survey):
    survey_id = make_survey()["survey"]["id"]
    with pytest.raises(NotFoundError):
        service.get_survey("owner-2", survey_id)
    with pytest.raises(NotFoundError):
        service.update_survey("owner-2", survey_id, {"title": "Mine now"})


def test_start_then_submit_records_result(service, make_survey):
    created = make_survey(
        participants=[
            {"full_name": "Ada Lovelace", "email": "ada@example.com"},
            {"full_name": "Alan Turing", "email": "alan@example.com"},
        ]
    )
    token = created["invitations"][0]["token"]

    with pytest.raises(ResponseNotFoundError):
        service.get_result_by_token(token)

    started = service.start_response(token, "web")
    assert started["enrollment"]["state"] == "pending"
    assert started["response"]["state"] == "in_progress"

    service.submit_response(
        token,
        {
            "answers": [
                {"question_code": "q1", "value_text": "yes"},
                {"question_code": "q2", "value_number": 4},
                {"question_code": "", "value_text": "dropped"},
            ]
        },
    )

    result = service.get_result_by_token(token)
    assert result["response"]["state"] == "submitted"
    assert result["response"]["channel"] == "api"
    assert [answer["question_code"] for answer in result["answers"]] == ["q1", "q2"]

    results = service.get_results("owner-1", created["survey"]["id"])
    assert len(results["results"]) == 1
    stats = results["statistics"]
    assert stats["total_enrollments"] == 2
    assert stats["responses_submitted"] == 1
    assert stats["completion_rate"] == 0.5


def test_template_schema_must_be_valid(template_service):
    with pytest.raises(TemplateSchemaError):
        template_service.create_template("owner-1", {"title": "Broken", "schema_json": {"type": 12}})
    with pytest.raises(TemplateSchemaError):
        template_service.create_template("owner-1", {"title": "Empty", "schema_json": {}})


def test_republishing_template_bumps_version(template_service, template):
    assert template["version"] == 1
    template_service.update_template(
        "owner-1", template["id"], {"schema_json": {"type": "object", "properties": {}}}
    )
    republished = template_service.publish_template("owner-1", template["id"])
    assert republished["version"] == 2
    assert republished["published_schema_json"] == {"type": "object", "properties": {}}


def test_moving_survey_end_earlier_clamps_live_tokens(service, make_survey, clock):
    created = make_survey()
    survey_id = created["survey"]["id"]
    token = created["invitations"][0]["token"]
    new_end = clock.now + timedelta(days=2)

    service.update_survey("owner-1", survey_id, {"ends_at": new_end})

    enrollments = service.get_survey("owner-1", survey_id)["enrollments"]
    assert [item["token_expires_at"] for item in enrollments] == [new_end]
    clock.advance(days=3)
    with pytest.raises(TokenExpiredError):
        service.submit_response(token, ANSWERS)


def test_setting_end_on_open_ended_survey_clamps_live_tokens(service, make_survey, clock):
    created = make_survey(ends_at=None)
    token = created["invitations"][0]["token"]
    assert created["invitations"][0]["expires_at"] == clock.now + timedelta(days=15)

    service.update_survey(
        "owner-1", created["survey"]["id"], {"ends_at": clock.now + timedelta(days=2)}
    )

    clock.advance(days=3)
    with pytest.raises(TokenExpiredError):
        service.access.resolve(token)


def test_create_rejects_duplicate_participant_email(service, make_survey):
    with pytest.raises(ParticipantExistsError):
        make_survey(
            participants=[
                {"full_name": "Ada Lovelace", "email": "ada@example.com"},
                {"full_name": "Ada L.", "email": "Ada@Example.com"},
            ]
        )
    assert service.list_surveys("owner-1") == []


def test_public_slug_conflict_is_not_a_participant_conflict(make_survey):
    make_survey(public_slug="checkin")
    with pytest.raises(ConflictError) as excinfo:
        make_survey(public_slug="checkin")
    assert not isinstance(excinfo.value, ParticipantExistsError)
