from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from surveygate.repo_json import JSONStorage
from surveygate.repo_sqlite import SQLiteStorage
from surveygate.service import SurveyService
from surveygate.templates import TemplateService
from surveygate.tokens import TokenCodec

SECRET = "test-secret-with-enough-bytes-for-hs256"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

SCHEMA = {
    "type": "object",
    "properties": {
        "q1": {"type": "string"},
        "q2": {"type": "integer"},
    },
    "required": ["q1"],
}


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(FIXED_NOW)


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(SECRET)


@pytest.fixture(params=["sqlite", "json"])
def storage(request, tmp_path):
    if request.param == "sqlite":
        store = SQLiteStorage(tmp_path / "app.db")
        yield store
        store.dispose()
    else:
        yield JSONStorage(tmp_path / "store.json")


@pytest.fixture
def service(storage, codec, clock) -> SurveyService:
    return SurveyService(storage, codec, clock)


@pytest.fixture
def template_service(storage, clock) -> TemplateService:
    return TemplateService(storage, clock)


@pytest.fixture
def template(template_service) -> dict[str, Any]:
    created = template_service.create_template(
        "owner-1", {"title": "Onboarding", "schema_json": SCHEMA}
    )
    return template_service.publish_template("owner-1", created["id"])


@pytest.fixture
def make_survey(service, template, clock):
    def _make(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "template_id": template["id"],
            "title": "Quarterly check-in",
            "starts_at": clock.now,
            "ends_at": clock.now + timedelta(days=7),
            "participants": [{"full_name": "Ada Lovelace", "email": "ada@example.com"}],
        }
        payload.update(overrides)
        return service.create_survey("owner-1", payload)

    return _make
