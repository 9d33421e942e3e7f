from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock
from tinydb import Query, TinyDB

from surveygate.enrollment import (
    INVITED,
    PENDING,
    REMOVED,
    USABLE_STATES,
    state_after_submit,
    usage_exhausted,
)
from surveygate.errors import (
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    ParticipantLimitError,
    TokenUsedError,
)
from surveygate.lifecycle import ARCHIVED, CLOSED, DRAFT, OPEN
from surveygate.storage import build_statistics
from surveygate.tokens import EnrollmentTokenPayload, TokenGenerator
from surveygate.utils import ensure_aware, new_ulid, now_utc, parse_dt, to_iso

_DATETIME_KEYS = {
    "created_at",
    "updated_at",
    "published_at",
    "starts_at",
    "ends_at",
    "token_expires_at",
    "started_at",
    "submitted_at",
    "value_date",
    "value_datetime",
}


def _encode(data: dict[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for key, value in data.items():
        if key in _DATETIME_KEYS and isinstance(value, datetime):
            record[key] = to_iso(value)
        elif key == "answers":
            record[key] = [_encode(answer) for answer in value]
        else:
            record[key] = value
    return record


def _decode(record: dict[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in dict(record).items():
        if key in _DATETIME_KEYS:
            data[key] = parse_dt(value)
        elif key == "answers":
            data[key] = [_decode(answer) for answer in value]
        else:
            data[key] = value
    return data


def _email_key(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def _public_enrollment(record: dict[str, Any]) -> dict[str, Any]:
    data = _decode(record)
    data.pop("invited_by", None)
    return data


def _public_response(record: dict[str, Any]) -> dict[str, Any]:
    data = _decode(record)
    data.pop("answers", None)
    return data


class JSONRepoBase:
    def __init__(self, path: Path, lock: FileLock) -> None:
        self._path = path
        self._lock = lock

    @contextmanager
    def _db(self) -> Iterator[TinyDB]:
        with self._lock:
            db = TinyDB(self._path)
            try:
                yield db
            finally:
                db.close()


def _ensure_no_duplicate(
    db: TinyDB, survey_id: str, email: str | None, pending: list[dict[str, Any]]
) -> None:
    key = _email_key(email)
    if key is None:
        return
    existing = db.table("enrollments").search(Query().survey_id == survey_id)
    for record in [*existing, *pending]:
        if record.get("state") != REMOVED and _email_key(record.get("email")) == key:
            raise ConflictError(f"enrollment with email {email} already exists")


def _new_enrollment(
    survey: dict[str, Any], participant: dict[str, Any], generator: TokenGenerator
) -> tuple[dict[str, Any], dict[str, Any]]:
    enrollment_id = new_ulid()
    email = participant.get("email") or None
    issued = generator(
        EnrollmentTokenPayload(
            survey_id=survey["id"],
            enrollment_id=enrollment_id,
            owner_id=survey["owner_id"],
            full_name=participant["full_name"],
            email=email,
            starts_at=parse_dt(survey.get("starts_at")),
            ends_at=parse_dt(survey.get("ends_at")),
        )
    )
    record = {
        "id": enrollment_id,
        "survey_id": survey["id"],
        "source": participant.get("source") or "admin",
        "full_name": participant["full_name"],
        "email": email,
        "phone": participant.get("phone") or None,
        "telegram_chat_id": participant.get("telegram_chat_id"),
        "state": INVITED,
        "token_hash": issued.token_hash,
        "token_expires_at": to_iso(issued.expires_at),
        "use_limit": participant.get("use_limit", 1),
        "used_count": 0,
        "invited_by": survey["owner_id"],
        "created_at": to_iso(now_utc()),
    }
    invitation = {
        "enrollment_id": enrollment_id,
        "token": issued.token,
        "expires_at": issued.expires_at,
        "full_name": participant["full_name"],
        "email": email,
    }
    return record, invitation


class JSONTemplateRepo(JSONRepoBase):
    def create_template(self, template: dict[str, Any]) -> None:
        with self._db() as db:
            db.table("templates").insert(_encode(template))

    def get_template(self, owner_id: str, template_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table("templates").get(
                (Query().id == template_id) & (Query().owner_id == owner_id)
            )
        return _decode(item) if item else None

    def list_templates(self, owner_id: str) -> list[dict[str, Any]]:
        with self._db() as db:
            items = db.table("templates").search(Query().owner_id == owner_id)
        templates = [_decode(item) for item in items]
        return sorted(templates, key=lambda x: x["updated_at"], reverse=True)

    def update_template(
        self, owner_id: str, template_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        cond = (Query().id == template_id) & (Query().owner_id == owner_id)
        with self._db() as db:
            table = db.table("templates")
            item = table.get(cond)
            if not item:
                raise NotFoundError(f"template {template_id}")
            item.update(_encode(updates))
            table.update(item, cond)
        return _decode(item)


class JSONSurveyRepo(JSONRepoBase):
    def save_survey(
        self,
        survey: dict[str, Any],
        participants: list[dict[str, Any]],
        generator: TokenGenerator,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        record = _encode(survey)
        with self._db() as db:
            surveys = db.table("surveys")
            if record.get("public_slug") and surveys.get(
                Query().public_slug == record["public_slug"]
            ):
                raise ConflictError(f"public slug {record['public_slug']} is taken")
            enrollments: list[dict[str, Any]] = []
            invitations: list[dict[str, Any]] = []
            for participant in participants:
                _ensure_no_duplicate(db, record["id"], participant.get("email"), enrollments)
                enrollment, invitation = _new_enrollment(record, participant, generator)
                enrollments.append(enrollment)
                invitations.append(invitation)
            surveys.insert(record)
            if enrollments:
                db.table("enrollments").insert_multiple(enrollments)
        return _decode(record), invitations

    def get_survey(self, owner_id: str, survey_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table("surveys").get(
                (Query().id == survey_id) & (Query().owner_id == owner_id)
            )
        return _decode(item) if item else None

    def list_surveys(self, owner_id: str) -> list[dict[str, Any]]:
        with self._db() as db:
            items = db.table("surveys").search(Query().owner_id == owner_id)
        surveys = [_decode(item) for item in items]
        return sorted(surveys, key=lambda x: x["created_at"], reverse=True)

    def update_survey(
        self, owner_id: str, survey_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        cond = (Query().id == survey_id) & (Query().owner_id == owner_id)
        with self._db() as db:
            table = db.table("surveys")
            item = table.get(cond)
            if not item:
                raise NotFoundError(f"survey {survey_id}")
            slug = updates.get("public_slug")
            if slug:
                taken = table.get((Query().public_slug == slug) & (Query().id != survey_id))
                if taken:
                    raise ConflictError(f"public slug {slug} is taken")
            item.update(_encode({**updates, "updated_at": now_utc()}))
            table.update(item, cond)
        return _decode(item)

    def transition_status(
        self, survey_id: str, target: str, from_statuses: set[str]
    ) -> bool:
        with self._db() as db:
            updated = db.table("surveys").update(
                {"status": target, "updated_at": to_iso(now_utc())},
                (Query().id == survey_id) & (Query().status.one_of(sorted(from_statuses))),
            )
        return bool(updated)

    def activate_scheduled(self, now: datetime) -> int:
        now = ensure_aware(now)

        def due(value: Any) -> bool:
            starts_at = parse_dt(value)
            return starts_at is not None and starts_at <= now

        with self._db() as db:
            updated = db.table("surveys").update(
                {"status": OPEN, "updated_at": to_iso(now)},
                (Query().status == DRAFT) & (Query().starts_at.test(due)),
            )
        return len(updated)

    def archive_expired(self, now: datetime) -> int:
        now = ensure_aware(now)

        def expired(value: Any) -> bool:
            ends_at = parse_dt(value)
            return ends_at is not None and ends_at < now

        with self._db() as db:
            updated = db.table("surveys").update(
                {"status": ARCHIVED, "updated_at": to_iso(now)},
                (Query().status.one_of([DRAFT, OPEN, CLOSED])) & (Query().ends_at.test(expired)),
            )
        return len(updated)


class JSONEnrollmentRepo(JSONRepoBase):
    def add_enrollment(
        self,
        survey_id: str,
        owner_id: str,
        participant: dict[str, Any],
        generator: TokenGenerator,
    ) -> dict[str, Any]:
        with self._db() as db:
            survey = db.table("surveys").get(
                (Query().id == survey_id) & (Query().owner_id == owner_id)
            )
            if not survey:
                raise NotFoundError(f"survey {survey_id}")
            table = db.table("enrollments")
            if survey.get("max_participants") is not None:
                enrolled = table.count(
                    (Query().survey_id == survey_id) & (Query().state != REMOVED)
                )
                if enrolled >= survey["max_participants"]:
                    raise ParticipantLimitError(
                        f"survey {survey_id} allows {survey['max_participants']} participants"
                    )
            _ensure_no_duplicate(db, survey_id, participant.get("email"), [])
            record, invitation = _new_enrollment(survey, participant, generator)
            table.insert(record)
        return invitation

    def remove_enrollment(self, owner_id: str, survey_id: str, enrollment_id: str) -> None:
        with self._db() as db:
            survey = db.table("surveys").get(
                (Query().id == survey_id) & (Query().owner_id == owner_id)
            )
            if not survey:
                raise NotFoundError(f"survey {survey_id}")
            updated = db.table("enrollments").update(
                {"state": REMOVED, "token_hash": None, "token_expires_at": None},
                (Query().id == enrollment_id)
                & (Query().survey_id == survey_id)
                & (Query().state != REMOVED),
            )
        if not updated:
            raise NotFoundError(f"enrollment {enrollment_id}")

    def list_enrollments(self, owner_id: str, survey_id: str) -> list[dict[str, Any]]:
        with self._db() as db:
            survey = db.table("surveys").get(
                (Query().id == survey_id) & (Query().owner_id == owner_id)
            )
            if not survey:
                return []
            items = db.table("enrollments").search(Query().survey_id == survey_id)
        enrollments = [_public_enrollment(item) for item in items]
        return sorted(enrollments, key=lambda x: (x["created_at"], x["id"]))

    def get_enrollment(self, enrollment_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table("enrollments").get(Query().id == enrollment_id)
        return _public_enrollment(item) if item else None

    def update_token(self, enrollment_id: str, token_hash: str, expires_at: datetime) -> None:
        with self._db() as db:
            updated = db.table("enrollments").update(
                {"token_hash": token_hash, "token_expires_at": to_iso(expires_at)},
                (Query().id == enrollment_id) & (Query().state.one_of(sorted(USABLE_STATES))),
            )
        if not updated:
            raise NotFoundError(f"enrollment {enrollment_id}")

    def update_expiry(self, enrollment_id: str, expires_at: datetime) -> bool:
        with self._db() as db:
            updated = db.table("enrollments").update(
                {"token_expires_at": to_iso(expires_at)},
                (Query().id == enrollment_id)
                & (Query().state.one_of(sorted(USABLE_STATES)))
                & (Query().token_hash.test(bool)),
            )
        return bool(updated)

    def has_incomplete(self, survey_id: str) -> bool:
        with self._db() as db:
            submitted = {
                item["enrollment_id"]
                for item in db.table("responses").search(
                    (Query().survey_id == survey_id) & (Query().state == "submitted")
                )
            }
            enrollments = db.table("enrollments").search(
                (Query().survey_id == survey_id) & (Query().state.one_of(sorted(USABLE_STATES)))
            )
        return any(item["id"] not in submitted for item in enrollments)

    def _access(self, db: TinyDB, enrollment: dict[str, Any] | None) -> dict[str, Any] | None:
        if not enrollment:
            return None
        survey = db.table("surveys").get(Query().id == enrollment["survey_id"])
        if not survey:
            return None
        return {"survey": _decode(survey), "enrollment": _public_enrollment(enrollment)}

    def get_access_by_hash(self, token_hash: str) -> dict[str, Any] | None:
        if not token_hash:
            return None
        with self._db() as db:
            enrollment = db.table("enrollments").get(Query().token_hash == token_hash)
            return self._access(db, enrollment)

    def get_access_by_id(self, enrollment_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            enrollment = db.table("enrollments").get(Query().id == enrollment_id)
            return self._access(db, enrollment)


class JSONResponseRepo(JSONRepoBase):
    def start_response(
        self, survey_id: str, enrollment_id: str, channel: str | None, now: datetime
    ) -> dict[str, Any]:
        cond = (Query().survey_id == survey_id) & (Query().enrollment_id == enrollment_id)
        with self._db() as db:
            responses = db.table("responses")
            item = responses.get(cond)
            if not item:
                item = {
                    "id": new_ulid(),
                    "survey_id": survey_id,
                    "enrollment_id": enrollment_id,
                    "state": "in_progress",
                    "channel": channel,
                    "started_at": to_iso(now),
                    "submitted_at": None,
                    "answers": [],
                }
                responses.insert(item)
            db.table("enrollments").update(
                {"state": PENDING},
                (Query().id == enrollment_id) & (Query().state == INVITED),
            )
        return _public_response(item)

    def submit_response(self, payload: dict[str, Any]) -> dict[str, Any]:
        enrollment_id = payload["enrollment_id"]
        submitted_at = to_iso(payload["submitted_at"])
        answers = [_encode(answer) for answer in payload.get("answers", [])]
        with self._db() as db:
            enrollments = db.table("enrollments")
            enrollment = enrollments.get(Query().id == enrollment_id)
            if not enrollment or enrollment.get("state") not in USABLE_STATES:
                raise InvalidTokenError(f"enrollment {enrollment_id} is not usable")
            token_hash = payload.get("token_hash")
            if token_hash and enrollment.get("token_hash") != token_hash:
                raise InvalidTokenError(f"enrollment {enrollment_id} token was rotated")
            if usage_exhausted(enrollment.get("use_limit", 0), enrollment.get("used_count", 0)):
                raise TokenUsedError(f"enrollment {enrollment_id} reached its usage limit")

            enrollment["used_count"] = enrollment.get("used_count", 0) + 1
            enrollment["state"] = state_after_submit(enrollment["state"])
            enrollments.update(
                {"used_count": enrollment["used_count"], "state": enrollment["state"]},
                Query().id == enrollment_id,
            )

            responses = db.table("responses")
            cond = (Query().survey_id == payload["survey_id"]) & (
                Query().enrollment_id == enrollment_id
            )
            response = responses.get(cond)
            if not response:
                response = {
                    "id": new_ulid(),
                    "survey_id": payload["survey_id"],
                    "enrollment_id": enrollment_id,
                    "channel": None,
                    "started_at": submitted_at,
                }
            response = dict(response)
            response["state"] = "submitted"
            response["channel"] = payload.get("channel") or response.get("channel")
            response["submitted_at"] = submitted_at
            response["answers"] = answers
            responses.upsert(response, cond)
        return {
            "response": _public_response(response),
            "answers": [_decode(answer) for answer in answers],
            "enrollment": _public_enrollment(enrollment),
        }

    def get_result(self, enrollment_id: str) -> dict[str, Any] | None:
        with self._db() as db:
            item = db.table("responses").get(Query().enrollment_id == enrollment_id)
        if not item:
            return None
        answers = sorted(
            (_decode(answer) for answer in item.get("answers", [])),
            key=lambda x: (x["question_code"], x.get("repeat_path") or ""),
        )
        return {"response": _public_response(item), "answers": answers}

    def list_results(self, owner_id: str, survey_id: str) -> list[dict[str, Any]]:
        with self._db() as db:
            survey = db.table("surveys").get(
                (Query().id == survey_id) & (Query().owner_id == owner_id)
            )
            if not survey:
                return []
            responses = db.table("responses").search(Query().survey_id == survey_id)
            enrollments = {
                item["id"]: item
                for item in db.table("enrollments").search(Query().survey_id == survey_id)
            }
        results = []
        for item in sorted(responses, key=lambda x: x.get("started_at") or ""):
            enrollment = enrollments.get(item["enrollment_id"])
            if not enrollment:
                continue
            answers = sorted(
                (_decode(answer) for answer in item.get("answers", [])),
                key=lambda x: (x["question_code"], x.get("repeat_path") or ""),
            )
            results.append(
                {
                    "enrollment": _public_enrollment(enrollment),
                    "response": _public_response(item),
                    "answers": answers,
                }
            )
        return results

    def statistics(self, owner_id: str, survey_id: str) -> dict[str, Any]:
        with self._db() as db:
            survey = db.table("surveys").get(
                (Query().id == survey_id) & (Query().owner_id == owner_id)
            )
            if not survey:
                return build_statistics(0, 0, 0, 0, [])
            enrollment_ids = {
                item["id"]
                for item in db.table("enrollments").search(
                    (Query().survey_id == survey_id) & (Query().state != REMOVED)
                )
            }
            responses = [
                _public_response(item)
                for item in db.table("responses").search(Query().survey_id == survey_id)
                if item["enrollment_id"] in enrollment_ids
            ]
        submitted = [item for item in responses if item["state"] == "submitted"]
        durations = [
            (item["submitted_at"] - item["started_at"]).total_seconds()
            for item in submitted
            if item.get("submitted_at") and item.get("started_at")
        ]
        return build_statistics(
            total=len(enrollment_ids),
            started=len(responses),
            submitted=len(submitted),
            in_progress=sum(1 for item in responses if item["state"] == "in_progress"),
            durations=durations,
        )


class JSONStorage:
    def __init__(self, path: Path) -> None:
        self._lock = FileLock(f"{path}.lock")
        self.templates = JSONTemplateRepo(path, self._lock)
        self.surveys = JSONSurveyRepo(path, self._lock)
        self.enrollments = JSONEnrollmentRepo(path, self._lock)
        self.responses = JSONResponseRepo(path, self._lock)
