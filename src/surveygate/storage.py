from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from surveygate.config import Settings, ensure_dirs
from surveygate.tokens import TokenGenerator


class TemplateRepository(Protocol):
    def create_template(self, template: dict[str, Any]) -> None: ...

    def get_template(self, owner_id: str, template_id: str) -> dict[str, Any] | None: ...

    def list_templates(self, owner_id: str) -> list[dict[str, Any]]: ...

    def update_template(
        self, owner_id: str, template_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]: ...


class SurveyRepository(Protocol):
    def save_survey(
        self,
        survey: dict[str, Any],
        participants: list[dict[str, Any]],
        generator: TokenGenerator,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]: ...

    def get_survey(self, owner_id: str, survey_id: str) -> dict[str, Any] | None: ...

    def list_surveys(self, owner_id: str) -> list[dict[str, Any]]: ...

    def update_survey(
        self, owner_id: str, survey_id: str, updates: dict[str, Any]
    ) -> dict[str, Any]: ...

    def transition_status(
        self, survey_id: str, target: str, from_statuses: set[str]
    ) -> bool: ...

    def activate_scheduled(self, now: datetime) -> int: ...

    def archive_expired(self, now: datetime) -> int: ...


class EnrollmentRepository(Protocol):
    def add_enrollment(
        self,
        survey_id: str,
        owner_id: str,
        participant: dict[str, Any],
        generator: TokenGenerator,
    ) -> dict[str, Any]: ...

    def remove_enrollment(self, owner_id: str, survey_id: str, enrollment_id: str) -> None: ...

    def list_enrollments(self, owner_id: str, survey_id: str) -> list[dict[str, Any]]: ...

    def get_enrollment(self, enrollment_id: str) -> dict[str, Any] | None: ...

    def update_token(self, enrollment_id: str, token_hash: str, expires_at: datetime) -> None: ...

    def update_expiry(self, enrollment_id: str, expires_at: datetime) -> bool: ...

    def has_incomplete(self, survey_id: str) -> bool: ...

    def get_access_by_hash(self, token_hash: str) -> dict[str, Any] | None: ...

    def get_access_by_id(self, enrollment_id: str) -> dict[str, Any] | None: ...


class ResponseRepository(Protocol):
    def start_response(
        self, survey_id: str, enrollment_id: str, channel: str | None, now: datetime
    ) -> dict[str, Any]: ...

    def submit_response(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    def get_result(self, enrollment_id: str) -> dict[str, Any] | None: ...

    def list_results(self, owner_id: str, survey_id: str) -> list[dict[str, Any]]: ...

    def statistics(self, owner_id: str, survey_id: str) -> dict[str, Any]: ...


class Storage(Protocol):
    templates: TemplateRepository
    surveys: SurveyRepository
    enrollments: EnrollmentRepository
    responses: ResponseRepository


def build_statistics(
    total: int,
    started: int,
    submitted: int,
    in_progress: int,
    durations: list[float],
) -> dict[str, Any]:
    return {
        "total_enrollments": total,
        "responses_started": started,
        "responses_submitted": submitted,
        "responses_in_progress": in_progress,
        "average_completion_seconds": (
            sum(durations) / len(durations) if durations else None
        ),
        "completion_rate": (submitted / total) if total else 0.0,
    }


def init_storage(settings: Settings) -> Storage:
    from surveygate.repo_json import JSONStorage
    from surveygate.repo_sqlite import SQLiteStorage

    ensure_dirs(settings)
    if settings.storage_backend == "json":
        return JSONStorage(settings.json_path)
    return SQLiteStorage(settings.sqlite_path)
