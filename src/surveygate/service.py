from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from surveygate.access import AccessResolver
from surveygate.enrollment import has_live_token, is_token_allowed, state_after_start
from surveygate.errors import (
    ConflictError,
    NotFoundError,
    ParticipantExistsError,
    ParticipantLimitError,
    ParticipantNotFoundError,
    ResponseNotFoundError,
    ScheduleInvalidError,
    SurveyGateError,
    TemplateSchemaError,
)
from surveygate.lifecycle import (
    CLOSED,
    DRAFT,
    OPEN,
    TERMINAL_FOR_AUTOCLOSE,
    check_transition,
    initial_status,
    validate_schedule,
)
from surveygate.storage import Storage
from surveygate.tokens import EnrollmentTokenPayload, IssuedToken, TokenCodec
from surveygate.utils import ensure_aware, new_ulid, now_utc

logger = logging.getLogger(__name__)

SURVEY_UPDATE_FIELDS = (
    "title",
    "mode",
    "status",
    "max_participants",
    "public_slug",
    "starts_at",
    "ends_at",
)


def _public_enrollment(enrollment: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in enrollment.items() if key != "token_hash"}


def _public_access(access: dict[str, Any]) -> dict[str, Any]:
    return {
        "survey": access["survey"],
        "enrollment": _public_enrollment(access["enrollment"]),
    }


def _ensure_unique_emails(participants: list[dict[str, Any]]) -> None:
    seen: set[str] = set()
    for participant in participants:
        key = (participant.get("email") or "").strip().lower()
        if not key:
            continue
        if key in seen:
            raise ParticipantExistsError(f"enrollment with email {participant['email']} already exists")
        seen.add(key)


class SurveyService:
    def __init__(
        self,
        storage: Storage,
        codec: TokenCodec,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._storage = storage
        self._codec = codec
        self._clock = clock
        self.access = AccessResolver(storage.enrollments, codec, clock)

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    def _issue_token(self, payload: EnrollmentTokenPayload) -> IssuedToken:
        return self._codec.issue(payload, now=self._now())

    def _owned_survey(self, owner_id: str, survey_id: str) -> dict[str, Any]:
        survey = self._storage.surveys.get_survey(owner_id, survey_id)
        if not survey:
            raise NotFoundError(f"survey {survey_id}")
        return survey

    def _survey_enrollment(
        self, survey: dict[str, Any], enrollment_id: str
    ) -> dict[str, Any]:
        enrollment = self._storage.enrollments.get_enrollment(enrollment_id)
        if not enrollment or enrollment["survey_id"] != survey["id"]:
            raise ParticipantNotFoundError(f"enrollment {enrollment_id}")
        return enrollment

    # Owner operations

    def create_survey(self, owner_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        logger.info("CreateSurvey owner_id=%s template_id=%s", owner_id, payload.get("template_id"))
        template = self._storage.templates.get_template(owner_id, payload["template_id"])
        if not template:
            raise NotFoundError(f"template {payload['template_id']}")

        schema = template.get("published_schema_json") or template.get("draft_schema_json")
        if not schema:
            raise TemplateSchemaError("template has no schema to snapshot")

        now = self._now()
        starts_at = payload.get("starts_at")
        ends_at = payload.get("ends_at")
        validate_schedule(starts_at, ends_at, now)

        participants = payload.get("participants") or []
        max_participants = payload.get("max_participants")
        if max_participants is not None and len(participants) > max_participants:
            raise ParticipantLimitError(
                f"{len(participants)} participants exceed the limit of {max_participants}"
            )
        _ensure_unique_emails(participants)

        survey = {
            "id": new_ulid(),
            "owner_id": owner_id,
            "template_id": template["id"],
            "snapshot_version": template.get("version", 1),
            "form_snapshot_json": schema,
            "title": payload.get("title") or template["title"],
            "mode": payload.get("mode") or "admin",
            "status": initial_status(payload.get("status"), starts_at, now),
            "max_participants": max_participants,
            "public_slug": payload.get("public_slug"),
            "starts_at": starts_at,
            "ends_at": ends_at,
            "created_at": now,
            "updated_at": now,
        }
        try:
            created, invitations = self._storage.surveys.save_survey(
                survey, participants, self._issue_token
            )
        except SurveyGateError:
            raise
        except Exception:
            logger.exception("Save survey failed owner_id=%s", owner_id)
            raise
        logger.info(
            "Survey created survey_id=%s status=%s invitations=%d",
            created["id"],
            created["status"],
            len(invitations),
        )
        return {"survey": created, "invitations": invitations}

    def list_surveys(self, owner_id: str) -> list[dict[str, Any]]:
        surveys = self._storage.surveys.list_surveys(owner_id)
        return [
            {
                "survey": survey,
                "statistics": self._storage.responses.statistics(owner_id, survey["id"]),
            }
            for survey in surveys
        ]

    def get_survey(self, owner_id: str, survey_id: str) -> dict[str, Any]:
        survey = self._owned_survey(owner_id, survey_id)
        enrollments = self._storage.enrollments.list_enrollments(owner_id, survey_id)
        return {
            "survey": survey,
            "enrollments": [_public_enrollment(item) for item in enrollments],
            "statistics": self._storage.responses.statistics(owner_id, survey_id),
        }

    def update_survey(
        self, owner_id: str, survey_id: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        logger.info("UpdateSurvey owner_id=%s survey_id=%s fields=%s", owner_id, survey_id, sorted(patch))
        current = self._owned_survey(owner_id, survey_id)
        updates = {key: patch[key] for key in SURVEY_UPDATE_FIELDS if key in patch}
        if not updates:
            return current

        if "starts_at" in updates or "ends_at" in updates:
            validate_schedule(
                updates.get("starts_at", current.get("starts_at")),
                updates.get("ends_at", current.get("ends_at")),
                self._now(),
            )
        if "status" in updates:
            check_transition(current["status"], updates["status"])

        updated = self._storage.surveys.update_survey(owner_id, survey_id, updates)

        new_end = updated.get("ends_at")
        if new_end is not None and new_end != current.get("ends_at"):
            self._sync_live_token_expiry(owner_id, survey_id, new_end)
        return updated

    def _sync_live_token_expiry(
        self, owner_id: str, survey_id: str, expires_at: datetime
    ) -> None:
        synced = 0
        for enrollment in self._storage.enrollments.list_enrollments(owner_id, survey_id):
            if not has_live_token(enrollment):
                continue
            try:
                if self._storage.enrollments.update_expiry(enrollment["id"], expires_at):
                    synced += 1
            except Exception:
                logger.exception(
                    "Token expiry update failed survey_id=%s enrollment_id=%s",
                    survey_id,
                    enrollment["id"],
                )
        logger.info(
            "Token expiry moved survey_id=%s expires_at=%s count=%d",
            survey_id,
            expires_at,
            synced,
        )

    def add_participants(
        self, owner_id: str, survey_id: str, participants: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        if not participants:
            return []
        logger.info(
            "AddSurveyParticipants owner_id=%s survey_id=%s count=%d",
            owner_id,
            survey_id,
            len(participants),
        )
        survey = self._owned_survey(owner_id, survey_id)
        invitations: list[dict[str, Any]] = []
        for participant in participants:
            try:
                invitation = self._storage.enrollments.add_enrollment(
                    survey["id"], survey["owner_id"], participant, self._issue_token
                )
            except ParticipantLimitError:
                raise
            except ConflictError as exc:
                raise ParticipantExistsError(str(exc)) from exc
            invitations.append(invitation)
        return invitations

    def remove_participant(self, owner_id: str, survey_id: str, enrollment_id: str) -> None:
        logger.info(
            "RemoveSurveyParticipant owner_id=%s survey_id=%s enrollment_id=%s",
            owner_id,
            survey_id,
            enrollment_id,
        )
        self._owned_survey(owner_id, survey_id)
        try:
            self._storage.enrollments.remove_enrollment(owner_id, survey_id, enrollment_id)
        except NotFoundError as exc:
            raise ParticipantNotFoundError(str(exc)) from exc

    def extend_token(
        self,
        owner_id: str,
        survey_id: str,
        enrollment_id: str,
        expires_at: datetime,
    ) -> dict[str, Any]:
        survey = self._owned_survey(owner_id, survey_id)
        enrollment = self._survey_enrollment(survey, enrollment_id)
        if not has_live_token(enrollment):
            raise ParticipantNotFoundError(f"enrollment {enrollment_id} has no live token")

        expires_at = ensure_aware(expires_at)
        if expires_at <= self._now():
            raise ScheduleInvalidError("expires_at must be in the future")
        ends_at = survey.get("ends_at")
        if ends_at is not None and expires_at > ends_at:
            raise ScheduleInvalidError("token cannot outlive the survey")

        if not self._storage.enrollments.update_expiry(enrollment_id, expires_at):
            raise ParticipantNotFoundError(f"enrollment {enrollment_id} has no live token")
        return {"enrollment_id": enrollment_id, "expires_at": expires_at}

    def reissue_token(
        self, owner_id: str, survey_id: str, enrollment_id: str
    ) -> dict[str, Any]:
        logger.info("ReissueToken survey_id=%s enrollment_id=%s", survey_id, enrollment_id)
        survey = self._owned_survey(owner_id, survey_id)
        enrollment = self._survey_enrollment(survey, enrollment_id)
        if not is_token_allowed(enrollment["state"]):
            raise ParticipantNotFoundError(f"enrollment {enrollment_id} is removed")

        issued = self._issue_token(
            EnrollmentTokenPayload(
                survey_id=survey["id"],
                enrollment_id=enrollment["id"],
                owner_id=survey["owner_id"],
                full_name=enrollment["full_name"],
                email=enrollment.get("email"),
                starts_at=survey.get("starts_at"),
                ends_at=survey.get("ends_at"),
            )
        )
        try:
            self._storage.enrollments.update_token(
                enrollment["id"], issued.token_hash, issued.expires_at
            )
        except NotFoundError as exc:
            raise ParticipantNotFoundError(str(exc)) from exc
        return {
            "enrollment_id": enrollment["id"],
            "token": issued.token,
            "expires_at": issued.expires_at,
            "full_name": enrollment["full_name"],
            "email": enrollment.get("email"),
        }

    def get_results(self, owner_id: str, survey_id: str) -> dict[str, Any]:
        survey = self._owned_survey(owner_id, survey_id)
        results = self._storage.responses.list_results(owner_id, survey_id)
        return {
            "survey": survey,
            "results": [
                {**item, "enrollment": _public_enrollment(item["enrollment"])}
                for item in results
            ],
            "statistics": self._storage.responses.statistics(owner_id, survey_id),
        }

    def get_enrollment_result(
        self, owner_id: str, survey_id: str, enrollment_id: str
    ) -> dict[str, Any]:
        survey = self._owned_survey(owner_id, survey_id)
        enrollment = self._survey_enrollment(survey, enrollment_id)
        result = self._storage.responses.get_result(enrollment_id)
        if result is None:
            raise ResponseNotFoundError(f"no response for enrollment {enrollment_id}")
        return {
            "survey": survey,
            "enrollment": _public_enrollment(enrollment),
            "response": result["response"],
            "answers": result["answers"],
        }

    # Participant operations

    def access_by_token(self, token: str) -> dict[str, Any]:
        return _public_access(self.access.resolve_usable(token))

    def start_response(self, token: str, channel: str | None = None) -> dict[str, Any]:
        access = self.access.resolve_usable(token)
        survey = access["survey"]
        enrollment = access["enrollment"]
        response = self._storage.responses.start_response(
            survey["id"], enrollment["id"], channel, self._now()
        )
        enrollment = {**enrollment, "state": state_after_start(enrollment["state"])}
        return {
            "survey": survey,
            "enrollment": _public_enrollment(enrollment),
            "response": response,
        }

    def submit_response(self, token: str, submission: dict[str, Any]) -> dict[str, Any]:
        access = self.access.resolve_usable(token)
        survey = access["survey"]
        enrollment = access["enrollment"]

        answers = [
            answer
            for answer in submission.get("answers") or []
            if answer.get("question_code")
        ]
        payload = {
            "survey_id": survey["id"],
            "enrollment_id": enrollment["id"],
            "token_hash": enrollment.get("token_hash"),
            "channel": submission.get("channel") or "api",
            "submitted_at": self._now(),
            "answers": answers,
        }
        try:
            saved = self._storage.responses.submit_response(payload)
        except SurveyGateError:
            raise
        except Exception:
            logger.exception("SubmitSurveyResponse failed enrollment_id=%s", enrollment["id"])
            raise

        survey = self._close_if_complete(survey)
        return {
            "survey": survey,
            "enrollment": _public_enrollment(saved["enrollment"]),
            "response": saved["response"],
            "answers": saved["answers"],
        }

    def _close_if_complete(self, survey: dict[str, Any]) -> dict[str, Any]:
        if survey["status"] in TERMINAL_FOR_AUTOCLOSE:
            return survey
        if self._storage.enrollments.has_incomplete(survey["id"]):
            return survey
        if self._storage.surveys.transition_status(survey["id"], CLOSED, {DRAFT, OPEN}):
            logger.info("Survey closed after last submission survey_id=%s", survey["id"])
            return {**survey, "status": CLOSED}
        return survey

    def get_result_by_token(self, token: str) -> dict[str, Any]:
        access = self.access.resolve(token)
        result = self._storage.responses.get_result(access["enrollment"]["id"])
        if result is None:
            raise ResponseNotFoundError(
                f"no response for enrollment {access['enrollment']['id']}"
            )
        return {
            **_public_access(access),
            "response": result["response"],
            "answers": result["answers"],
        }
