from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import case, create_engine, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from surveygate.enrollment import (
    ACTIVE,
    APPROVED,
    INVITED,
    PENDING,
    REMOVED,
    USABLE_STATES,
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
from surveygate.models import (
    AnswerModel,
    Base,
    EnrollmentModel,
    ResponseModel,
    SurveyModel,
    TemplateModel,
)
from surveygate.storage import build_statistics
from surveygate.tokens import EnrollmentTokenPayload, TokenGenerator
from surveygate.utils import dumps_json, ensure_aware, loads_json, new_ulid, now_utc

_JSON_COLUMNS = {"draft_schema_json", "published_schema_json", "form_snapshot_json"}
_DATETIME_COLUMNS = {
    "created_at",
    "updated_at",
    "published_at",
    "starts_at",
    "ends_at",
    "token_expires_at",
}


def _db_dt(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_aware(value)


def _email_key(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def _column_value(key: str, value: Any) -> Any:
    if key in _JSON_COLUMNS:
        return dumps_json(value) if value is not None else None
    if key in _DATETIME_COLUMNS:
        return _db_dt(value)
    return value


def _template_to_dict(row: TemplateModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "owner_id": row.owner_id,
        "title": row.title,
        "description": row.description,
        "version": row.version,
        "status": row.status,
        "draft_schema_json": loads_json(row.draft_schema_json),
        "published_schema_json": loads_json(row.published_schema_json),
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
        "published_at": _aware(row.published_at),
    }


def _survey_to_dict(row: SurveyModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "owner_id": row.owner_id,
        "template_id": row.template_id,
        "snapshot_version": row.snapshot_version,
        "form_snapshot_json": loads_json(row.form_snapshot_json),
        "title": row.title,
        "mode": row.mode,
        "status": row.status,
        "max_participants": row.max_participants,
        "public_slug": row.public_slug,
        "starts_at": _aware(row.starts_at),
        "ends_at": _aware(row.ends_at),
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
    }


def _enrollment_to_dict(row: EnrollmentModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "survey_id": row.survey_id,
        "source": row.source,
        "full_name": row.full_name,
        "email": row.email,
        "phone": row.phone,
        "telegram_chat_id": row.telegram_chat_id,
        "state": row.state,
        "token_hash": row.token_hash,
        "token_expires_at": _aware(row.token_expires_at),
        "use_limit": row.use_limit,
        "used_count": row.used_count,
        "created_at": _aware(row.created_at),
    }


def _response_to_dict(row: ResponseModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "survey_id": row.survey_id,
        "enrollment_id": row.enrollment_id,
        "state": row.state,
        "channel": row.channel,
        "started_at": _aware(row.started_at),
        "submitted_at": _aware(row.submitted_at),
    }


def _answer_to_dict(row: AnswerModel) -> dict[str, Any]:
    return {
        "question_code": row.question_code,
        "section_code": row.section_code,
        "repeat_path": row.repeat_path or "",
        "value_text": row.value_text,
        "value_number": row.value_number,
        "value_bool": row.value_bool,
        "value_date": _aware(row.value_date),
        "value_datetime": _aware(row.value_datetime),
        "value_json": loads_json(row.value_json),
    }


def _new_enrollment(
    survey_id: str, owner_id: str, participant: dict[str, Any]
) -> EnrollmentModel:
    email = participant.get("email") or None
    return EnrollmentModel(
        id=new_ulid(),
        survey_id=survey_id,
        source=participant.get("source") or "admin",
        full_name=participant["full_name"],
        email=email,
        email_key=_email_key(email),
        phone=participant.get("phone") or None,
        telegram_chat_id=participant.get("telegram_chat_id"),
        state=INVITED,
        use_limit=participant.get("use_limit", 1),
        used_count=0,
        invited_by=owner_id,
        created_at=_db_dt(now_utc()),
    )


def _issue_for(
    row: EnrollmentModel,
    survey: SurveyModel,
    generator: TokenGenerator,
) -> dict[str, Any]:
    issued = generator(
        EnrollmentTokenPayload(
            survey_id=survey.id,
            enrollment_id=row.id,
            owner_id=survey.owner_id,
            full_name=row.full_name,
            email=row.email,
            starts_at=_aware(survey.starts_at),
            ends_at=_aware(survey.ends_at),
        )
    )
    row.token_hash = issued.token_hash
    row.token_expires_at = _db_dt(issued.expires_at)
    return {
        "enrollment_id": row.id,
        "token": issued.token,
        "expires_at": issued.expires_at,
        "full_name": row.full_name,
        "email": row.email,
    }


class SQLiteTemplateRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def create_template(self, template: dict[str, Any]) -> None:
        with self._Session() as session:
            row = TemplateModel(
                **{key: _column_value(key, value) for key, value in template.items()}
            )
            session.add(row)
            session.commit()

    def get_template(self, owner_id: str, template_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = (
                session.query(TemplateModel)
                .filter(TemplateModel.id == template_id, TemplateModel.owner_id == owner_id)
                .first()
            )
            return _template_to_dict(row) if row else None

    def list_templates(self, owner_id: str) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(TemplateModel)
                .filter(TemplateModel.owner_id == owner_id)
                .order_by(TemplateModel.updated_at.desc())
                .all()
            )
            return [_template_to_dict(row) for row in rows]

    def update_template(
        self, owner_id: str, template_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        with self._Session() as session:
            row = (
                session.query(TemplateModel)
                .filter(TemplateModel.id == template_id, TemplateModel.owner_id == owner_id)
                .first()
            )
            if not row:
                raise NotFoundError(f"template {template_id}")
            for key, value in updates.items():
                setattr(row, key, _column_value(key, value))
            session.commit()
            session.refresh(row)
            return _template_to_dict(row)


class SQLiteSurveyRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def save_survey(
        self,
        survey: dict[str, Any],
        participants: list[dict[str, Any]],
        generator: TokenGenerator,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        invitations: list[dict[str, Any]] = []
        try:
            with self._Session() as session, session.begin():
                row = SurveyModel(
                    **{key: _column_value(key, value) for key, value in survey.items()}
                )
                session.add(row)
                session.flush()
                for participant in participants:
                    enrollment = _new_enrollment(row.id, row.owner_id, participant)
                    session.add(enrollment)
                    invitations.append(_issue_for(enrollment, row, generator))
                    session.flush()
                created = _survey_to_dict(row)
        except IntegrityError as exc:
            raise ConflictError(f"save survey: {exc.orig}") from exc
        return created, invitations

    def get_survey(self, owner_id: str, survey_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = (
                session.query(SurveyModel)
                .filter(SurveyModel.id == survey_id, SurveyModel.owner_id == owner_id)
                .first()
            )
            return _survey_to_dict(row) if row else None

    def list_surveys(self, owner_id: str) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(SurveyModel)
                .filter(SurveyModel.owner_id == owner_id)
                .order_by(SurveyModel.created_at.desc())
                .all()
            )
            return [_survey_to_dict(row) for row in rows]

    def update_survey(
        self, owner_id: str, survey_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            with self._Session() as session, session.begin():
                row = (
                    session.query(SurveyModel)
                    .filter(SurveyModel.id == survey_id, SurveyModel.owner_id == owner_id)
                    .first()
                )
                if not row:
                    raise NotFoundError(f"survey {survey_id}")
                for key, value in updates.items():
                    setattr(row, key, _column_value(key, value))
                row.updated_at = _db_dt(now_utc())
                session.flush()
                return _survey_to_dict(row)
        except IntegrityError as exc:
            raise ConflictError(f"update survey: {exc.orig}") from exc

    def transition_status(
        self, survey_id: str, target: str, from_statuses: set[str]
    ) -> bool:
        with self._Session() as session, session.begin():
            result = session.execute(
                update(SurveyModel)
                .where(
                    SurveyModel.id == survey_id,
                    SurveyModel.status.in_(sorted(from_statuses)),
                )
                .values(status=target, updated_at=_db_dt(now_utc()))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def activate_scheduled(self, now: datetime) -> int:
        with self._Session() as session, session.begin():
            result = session.execute(
                update(SurveyModel)
                .where(
                    SurveyModel.status == DRAFT,
                    SurveyModel.starts_at.is_not(None),
                    SurveyModel.starts_at <= _db_dt(now),
                )
                .values(status=OPEN, updated_at=_db_dt(now))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def archive_expired(self, now: datetime) -> int:
        with self._Session() as session, session.begin():
            result = session.execute(
                update(SurveyModel)
                .where(
                    SurveyModel.status.in_([DRAFT, OPEN, CLOSED]),
                    SurveyModel.ends_at.is_not(None),
                    SurveyModel.ends_at < _db_dt(now),
                )
                .values(status=ARCHIVED, updated_at=_db_dt(now))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount


class SQLiteEnrollmentRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def add_enrollment(
        self,
        survey_id: str,
        owner_id: str,
        participant: dict[str, Any],
        generator: TokenGenerator,
    ) -> dict[str, Any]:
        try:
            with self._Session() as session, session.begin():
                survey = (
                    session.query(SurveyModel)
                    .filter(SurveyModel.id == survey_id, SurveyModel.owner_id == owner_id)
                    .first()
                )
                if not survey:
                    raise NotFoundError(f"survey {survey_id}")
                if survey.max_participants is not None:
                    enrolled = (
                        session.query(func.count(EnrollmentModel.id))
                        .filter(
                            EnrollmentModel.survey_id == survey_id,
                            EnrollmentModel.state != REMOVED,
                        )
                        .scalar()
                    )
                    if enrolled >= survey.max_participants:
                        raise ParticipantLimitError(
                            f"survey {survey_id} allows {survey.max_participants} participants"
                        )
                row = _new_enrollment(survey_id, owner_id, participant)
                session.add(row)
                session.flush()
                invitation = _issue_for(row, survey, generator)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"insert enrollment: {exc.orig}") from exc
        return invitation

    def remove_enrollment(self, owner_id: str, survey_id: str, enrollment_id: str) -> None:
        owned = select(SurveyModel.id).where(
            SurveyModel.id == survey_id, SurveyModel.owner_id == owner_id
        )
        with self._Session() as session, session.begin():
            result = session.execute(
                update(EnrollmentModel)
                .where(
                    EnrollmentModel.id == enrollment_id,
                    EnrollmentModel.survey_id.in_(owned),
                    EnrollmentModel.state != REMOVED,
                )
                .values(
                    state=REMOVED,
                    token_hash=None,
                    token_expires_at=None,
                    email_key=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"enrollment {enrollment_id}")

    def list_enrollments(self, owner_id: str, survey_id: str) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(EnrollmentModel)
                .join(SurveyModel, SurveyModel.id == EnrollmentModel.survey_id)
                .filter(SurveyModel.owner_id == owner_id, EnrollmentModel.survey_id == survey_id)
                .order_by(EnrollmentModel.created_at, EnrollmentModel.id)
                .all()
            )
            return [_enrollment_to_dict(row) for row in rows]

    def get_enrollment(self, enrollment_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(EnrollmentModel, enrollment_id)
            return _enrollment_to_dict(row) if row else None

    def update_token(self, enrollment_id: str, token_hash: str, expires_at: datetime) -> None:
        with self._Session() as session, session.begin():
            result = session.execute(
                update(EnrollmentModel)
                .where(
                    EnrollmentModel.id == enrollment_id,
                    EnrollmentModel.state.in_(sorted(USABLE_STATES)),
                )
                .values(token_hash=token_hash, token_expires_at=_db_dt(expires_at))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"enrollment {enrollment_id}")

    def update_expiry(self, enrollment_id: str, expires_at: datetime) -> bool:
        with self._Session() as session, session.begin():
            result = session.execute(
                update(EnrollmentModel)
                .where(
                    EnrollmentModel.id == enrollment_id,
                    EnrollmentModel.state.in_(sorted(USABLE_STATES)),
                    EnrollmentModel.token_hash.is_not(None),
                )
                .values(token_expires_at=_db_dt(expires_at))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def has_incomplete(self, survey_id: str) -> bool:
        submitted = select(ResponseModel.enrollment_id).where(
            ResponseModel.survey_id == survey_id,
            ResponseModel.state == "submitted",
        )
        with self._Session() as session:
            remaining = (
                session.query(func.count(EnrollmentModel.id))
                .filter(
                    EnrollmentModel.survey_id == survey_id,
                    EnrollmentModel.state.in_(sorted(USABLE_STATES)),
                    EnrollmentModel.id.not_in(submitted),
                )
                .scalar()
            )
            return remaining > 0

    def get_access_by_hash(self, token_hash: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = (
                session.query(EnrollmentModel, SurveyModel)
                .join(SurveyModel, SurveyModel.id == EnrollmentModel.survey_id)
                .filter(EnrollmentModel.token_hash == token_hash)
                .first()
            )
            if not row:
                return None
            enrollment, survey = row
            return {
                "survey": _survey_to_dict(survey),
                "enrollment": _enrollment_to_dict(enrollment),
            }

    def get_access_by_id(self, enrollment_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = (
                session.query(EnrollmentModel, SurveyModel)
                .join(SurveyModel, SurveyModel.id == EnrollmentModel.survey_id)
                .filter(EnrollmentModel.id == enrollment_id)
                .first()
            )
            if not row:
                return None
            enrollment, survey = row
            return {
                "survey": _survey_to_dict(survey),
                "enrollment": _enrollment_to_dict(enrollment),
            }


class SQLiteResponseRepo:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._Session = session_factory

    def start_response(
        self, survey_id: str, enrollment_id: str, channel: str | None, now: datetime
    ) -> dict[str, Any]:
        try:
            with self._Session() as session, session.begin():
                row = (
                    session.query(ResponseModel)
                    .filter(
                        ResponseModel.survey_id == survey_id,
                        ResponseModel.enrollment_id == enrollment_id,
                    )
                    .first()
                )
                if row is None:
                    row = ResponseModel(
                        id=new_ulid(),
                        survey_id=survey_id,
                        enrollment_id=enrollment_id,
                        state="in_progress",
                        channel=channel,
                        started_at=_db_dt(now),
                    )
                    session.add(row)
                    session.flush()
                session.execute(
                    update(EnrollmentModel)
                    .where(EnrollmentModel.id == enrollment_id, EnrollmentModel.state == INVITED)
                    .values(state=PENDING)
                    .execution_options(synchronize_session=False)
                )
                return _response_to_dict(row)
        except IntegrityError:
            # A concurrent start created the row first.
            result = self.get_result(enrollment_id)
            if result is None:
                raise
            return result["response"]

    def submit_response(self, payload: dict[str, Any]) -> dict[str, Any]:
        enrollment_id = payload["enrollment_id"]
        submitted_at = _db_dt(payload["submitted_at"])
        guard = [
            EnrollmentModel.id == enrollment_id,
            EnrollmentModel.state.in_(sorted(USABLE_STATES)),
            or_(
                EnrollmentModel.use_limit == 0,
                EnrollmentModel.used_count < EnrollmentModel.use_limit,
            ),
        ]
        if payload.get("token_hash"):
            guard.append(EnrollmentModel.token_hash == payload["token_hash"])

        with self._Session() as session, session.begin():
            result = session.execute(
                update(EnrollmentModel)
                .where(*guard)
                .values(
                    used_count=EnrollmentModel.used_count + 1,
                    state=case(
                        (EnrollmentModel.state.in_([INVITED, PENDING]), APPROVED),
                        (EnrollmentModel.state == APPROVED, ACTIVE),
                        else_=EnrollmentModel.state,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = session.get(EnrollmentModel, enrollment_id)
                if current is not None and usage_exhausted(current.use_limit, current.used_count):
                    raise TokenUsedError(f"enrollment {enrollment_id} reached its usage limit")
                raise InvalidTokenError(f"enrollment {enrollment_id} is not usable")

            response = (
                session.query(ResponseModel)
                .filter(
                    ResponseModel.survey_id == payload["survey_id"],
                    ResponseModel.enrollment_id == enrollment_id,
                )
                .first()
            )
            if response is None:
                response = ResponseModel(
                    id=new_ulid(),
                    survey_id=payload["survey_id"],
                    enrollment_id=enrollment_id,
                    started_at=submitted_at,
                )
                session.add(response)
            response.state = "submitted"
            response.channel = payload.get("channel") or response.channel
            response.submitted_at = submitted_at
            session.flush()

            session.query(AnswerModel).filter(AnswerModel.response_id == response.id).delete(
                synchronize_session=False
            )
            answers: list[AnswerModel] = []
            for answer in payload.get("answers", []):
                answers.append(
                    AnswerModel(
                        response_id=response.id,
                        question_code=answer["question_code"],
                        section_code=answer.get("section_code"),
                        repeat_path=answer.get("repeat_path") or "",
                        value_text=answer.get("value_text"),
                        value_number=answer.get("value_number"),
                        value_bool=answer.get("value_bool"),
                        value_date=_db_dt(answer.get("value_date")),
                        value_datetime=_db_dt(answer.get("value_datetime")),
                        value_json=(
                            dumps_json(answer["value_json"])
                            if answer.get("value_json") is not None
                            else None
                        ),
                    )
                )
            session.add_all(answers)
            session.flush()

            enrollment = session.get(EnrollmentModel, enrollment_id)
            session.refresh(enrollment)
            return {
                "response": _response_to_dict(response),
                "answers": [_answer_to_dict(answer) for answer in answers],
                "enrollment": _enrollment_to_dict(enrollment),
            }

    def get_result(self, enrollment_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            response = (
                session.query(ResponseModel)
                .filter(ResponseModel.enrollment_id == enrollment_id)
                .first()
            )
            if not response:
                return None
            answers = (
                session.query(AnswerModel)
                .filter(AnswerModel.response_id == response.id)
                .order_by(AnswerModel.question_code, AnswerModel.repeat_path)
                .all()
            )
            return {
                "response": _response_to_dict(response),
                "answers": [_answer_to_dict(answer) for answer in answers],
            }

    def list_results(self, owner_id: str, survey_id: str) -> list[dict[str, Any]]:
        with self._Session() as session:
            rows = (
                session.query(ResponseModel, EnrollmentModel)
                .join(EnrollmentModel, EnrollmentModel.id == ResponseModel.enrollment_id)
                .join(SurveyModel, SurveyModel.id == ResponseModel.survey_id)
                .filter(SurveyModel.owner_id == owner_id, SurveyModel.id == survey_id)
                .order_by(ResponseModel.started_at)
                .all()
            )
            if not rows:
                return []
            response_ids = [response.id for response, _ in rows]
            answers_by_response: dict[str, list[dict[str, Any]]] = {}
            answer_rows = (
                session.query(AnswerModel)
                .filter(AnswerModel.response_id.in_(response_ids))
                .order_by(
                    AnswerModel.response_id,
                    AnswerModel.question_code,
                    AnswerModel.repeat_path,
                )
                .all()
            )
            for answer in answer_rows:
                answers_by_response.setdefault(answer.response_id, []).append(
                    _answer_to_dict(answer)
                )
            return [
                {
                    "enrollment": _enrollment_to_dict(enrollment),
                    "response": _response_to_dict(response),
                    "answers": answers_by_response.get(response.id, []),
                }
                for response, enrollment in rows
            ]

    def statistics(self, owner_id: str, survey_id: str) -> dict[str, Any]:
        with self._Session() as session:
            enrollments = (
                session.query(EnrollmentModel.id)
                .join(SurveyModel, SurveyModel.id == EnrollmentModel.survey_id)
                .filter(
                    SurveyModel.owner_id == owner_id,
                    SurveyModel.id == survey_id,
                    EnrollmentModel.state != REMOVED,
                )
                .all()
            )
            enrollment_ids = {row[0] for row in enrollments}
            responses = (
                session.query(ResponseModel)
                .filter(ResponseModel.survey_id == survey_id)
                .all()
            )
            responses = [row for row in responses if row.enrollment_id in enrollment_ids]
            submitted = [row for row in responses if row.state == "submitted"]
            durations = [
                (row.submitted_at - row.started_at).total_seconds()
                for row in submitted
                if row.submitted_at is not None and row.started_at is not None
            ]
            return build_statistics(
                total=len(enrollment_ids),
                started=len(responses),
                submitted=len(submitted),
                in_progress=sum(1 for row in responses if row.state == "in_progress"),
                durations=durations,
            )


class SQLiteStorage:
    def __init__(self, db_path: Path) -> None:
        self._engine = create_engine(
            f"sqlite:///{db_path}",
            future=True,
            connect_args={"check_same_thread": False},
        )
        self._Session = sessionmaker(self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)
        self.templates = SQLiteTemplateRepo(self._Session)
        self.surveys = SQLiteSurveyRepo(self._Session)
        self.enrollments = SQLiteEnrollmentRepo(self._Session)
        self.responses = SQLiteResponseRepo(self._Session)

    def dispose(self) -> None:
        self._engine.dispose()
