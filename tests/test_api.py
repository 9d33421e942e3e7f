from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import SCHEMA, SECRET
from surveygate.app import create_app
from surveygate.auth import issue_owner_token
from surveygate.config import Settings


def _settings(auth_mode="none"):
    settings = Settings()
    settings.token_secret = SECRET
    settings.scheduler_enabled = False
    settings.auth_mode = auth_mode
    settings.default_owner_id = "owner-1"
    return settings


@pytest.fixture
def client(storage, clock):
    app = create_app(_settings(), storage=storage, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


def _create_survey(client, clock, **overrides):
    template = client.post("/api/templates", json={"title": "Onboarding", "schema_json": SCHEMA})
    assert template.status_code == 201
    payload = {
        "template_id": template.json()["id"],
        "starts_at": clock.now.isoformat(),
        "ends_at": (clock.now + timedelta(days=7)).isoformat(),
        "participants": [{"full_name": "Ada Lovelace", "email": "ada@example.com"}],
    }
    payload.update(overrides)
    response = client.post("/api/surveys", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_participant_flow(client, clock):
    created = _create_survey(client, clock)
    assert created["survey"]["status"] == "open"
    token = created["invitations"][0]["token"]

    access = client.get("/api/public/access", params={"token": token})
    assert access.status_code == 200
    assert access.json()["survey"]["id"] == created["survey"]["id"]
    assert "token_hash" not in access.json()["enrollment"]

    started = client.post("/api/public/responses/start", json={"token": token, "channel": "web"})
    assert started.status_code == 200
    assert started.json()["enrollment"]["state"] == "pending"

    submitted = client.post(
        "/api/public/responses/submit",
        json={"token": token, "answers": [{"question_code": "q1", "value_text": "yes"}]},
    )
    assert submitted.status_code == 200
    assert submitted.json()["survey"]["status"] == "closed"

    again = client.post("/api/public/responses/submit", json={"token": token, "answers": []})
    assert again.status_code == 403

    result = client.get("/api/public/result", params={"token": token})
    assert result.status_code == 200
    assert result.json()["answers"][0]["value_text"] == "yes"

    survey = client.get(f"/api/surveys/{created['survey']['id']}")
    assert survey.json()["statistics"]["responses_submitted"] == 1


def test_token_errors_map_to_status_codes(client, clock):
    assert client.post("/api/public/access", json={"token": "garbage"}).status_code == 401
    assert client.post("/api/public/access", json={}).status_code == 400

    created = _create_survey(client, clock)
    token = created["invitations"][0]["token"]
    clock.advance(days=8)
    assert client.post("/api/public/access", json={"token": token}).status_code == 410


def test_not_started_survey_is_forbidden(client, clock):
    created = _create_survey(client, clock, starts_at=(clock.now + timedelta(days=1)).isoformat())
    token = created["invitations"][0]["token"]
    assert client.post("/api/public/access", json={"token": token}).status_code == 403


def test_invalid_schedule_is_bad_request(client, clock):
    template = client.post("/api/templates", json={"title": "T", "schema_json": SCHEMA}).json()
    response = client.post(
        "/api/surveys",
        json={
            "template_id": template["id"],
            "starts_at": (clock.now + timedelta(days=2)).isoformat(),
            "ends_at": (clock.now + timedelta(days=1)).isoformat(),
        },
    )
    assert response.status_code == 400
    assert client.get("/api/surveys").json() == []


def test_participant_management(client, clock):
    created = _create_survey(client, clock)
    survey_id = created["survey"]["id"]
    enrollment_id = created["invitations"][0]["enrollment_id"]

    duplicate = client.post(
        f"/api/surveys/{survey_id}/participants",
        json={"participants": [{"full_name": "Ada", "email": "ada@EXAMPLE.com"}]},
    )
    assert duplicate.status_code == 409

    added = client.post(
        f"/api/surveys/{survey_id}/participants",
        json={"participants": [{"full_name": "Alan Turing"}]},
    )
    assert added.status_code == 201
    assert len(added.json()["invitations"]) == 1

    extended = client.post(
        f"/api/surveys/{survey_id}/participants/{enrollment_id}/extend",
        json={"expires_at": (clock.now + timedelta(days=2)).isoformat()},
    )
    assert extended.status_code == 200

    reissued = client.post(f"/api/surveys/{survey_id}/participants/{enrollment_id}/reissue")
    assert reissued.status_code == 200
    assert reissued.json()["token"] != created["invitations"][0]["token"]

    path = f"/api/surveys/{survey_id}/participants/{enrollment_id}"
    assert client.delete(path).status_code == 204
    assert client.delete(path).status_code == 404


def test_update_survey(client, clock):
    survey_id = _create_survey(client, clock)["survey"]["id"]

    renamed = client.put(f"/api/surveys/{survey_id}", json={"title": "Renamed"})
    assert renamed.json()["title"] == "Renamed"

    assert client.put(f"/api/surveys/{survey_id}", json={"status": "archived"}).status_code == 200
    assert client.put(f"/api/surveys/{survey_id}", json={"status": "open"}).status_code == 400
    assert client.put("/api/surveys/missing", json={"title": "x"}).status_code == 404


def test_bad_datetime_is_rejected(client):
    template = client.post("/api/templates", json={"title": "T", "schema_json": SCHEMA}).json()
    response = client.post(
        "/api/surveys", json={"template_id": template["id"], "ends_at": "next tuesday"}
    )
    assert response.status_code == 400


def test_invalid_template_schema(client):
    response = client.post("/api/templates", json={"title": "T", "schema_json": {"type": 5}})
    assert response.status_code == 400


def test_token_auth_mode(storage, clock):
    app = create_app(_settings(auth_mode="token"), storage=storage, clock=clock)
    with TestClient(app) as client:
        assert client.get("/api/surveys").status_code == 401
        assert (
            client.get("/api/surveys", headers={"Authorization": "Bearer nope"}).status_code
            == 401
        )

        token = issue_owner_token(SECRET, "owner-9", timedelta(minutes=5))
        response = client.get("/api/surveys", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json() == []
