from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from surveygate.routes.common import (
    domain_errors,
    json_response,
    owner_guard,
    payload_dt,
    read_payload,
)
from surveygate.service import SURVEY_UPDATE_FIELDS

router = APIRouter()


def _survey_service(request: Request):
    return request.app.state.survey_service


def _optional_count(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise HTTPException(status_code=400, detail=f"{key} must be a non-negative integer")
    return value


def _optional_text(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_participants(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="participants must be a list")
    participants: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail="participant must be an object")
        full_name = str(item.get("full_name", "")).strip()
        if not full_name:
            raise HTTPException(status_code=400, detail="participant full_name is required")
        participant: dict[str, Any] = {
            "full_name": full_name,
            "email": _optional_text(item, "email"),
            "phone": _optional_text(item, "phone"),
            "source": _optional_text(item, "source") or "admin",
        }
        use_limit = _optional_count(item, "use_limit")
        if use_limit is not None:
            participant["use_limit"] = use_limit
        chat_id = item.get("telegram_chat_id")
        if chat_id is not None:
            if isinstance(chat_id, bool) or not isinstance(chat_id, int):
                raise HTTPException(status_code=400, detail="telegram_chat_id must be an integer")
            participant["telegram_chat_id"] = chat_id
        participants.append(participant)
    return participants


@router.get("/api/surveys", tags=["api/surveys"])
async def api_list_surveys(
    request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    with domain_errors():
        surveys = _survey_service(request).list_surveys(owner_id)
    return json_response(surveys)


@router.post("/api/surveys", tags=["api/surveys"])
async def api_create_survey(
    request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    payload = await read_payload(request)
    template_id = str(payload.get("template_id", "")).strip()
    if not template_id:
        raise HTTPException(status_code=400, detail="template_id is required")
    data = {
        "template_id": template_id,
        "title": _optional_text(payload, "title"),
        "mode": _optional_text(payload, "mode"),
        "status": _optional_text(payload, "status"),
        "max_participants": _optional_count(payload, "max_participants"),
        "public_slug": _optional_text(payload, "public_slug"),
        "starts_at": payload_dt(payload, "starts_at"),
        "ends_at": payload_dt(payload, "ends_at"),
        "participants": parse_participants(payload.get("participants")),
    }
    with domain_errors():
        created = _survey_service(request).create_survey(owner_id, data)
    return json_response(created, status_code=201)


@router.get("/api/surveys/{survey_id}", tags=["api/surveys"])
async def api_get_survey(
    survey_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    with domain_errors():
        survey = _survey_service(request).get_survey(owner_id, survey_id)
    return json_response(survey)


@router.put("/api/surveys/{survey_id}", tags=["api/surveys"])
async def api_update_survey(
    survey_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    payload = await read_payload(request)
    patch: dict[str, Any] = {}
    for key in SURVEY_UPDATE_FIELDS:
        if key not in payload:
            continue
        if key in {"starts_at", "ends_at"}:
            patch[key] = payload_dt(payload, key)
        elif key == "max_participants":
            patch[key] = _optional_count(payload, key)
        elif key in {"title", "status", "mode"}:
            value = _optional_text(payload, key)
            if value is None:
                raise HTTPException(status_code=400, detail=f"{key} cannot be empty")
            patch[key] = value
        else:
            patch[key] = _optional_text(payload, key)
    with domain_errors():
        survey = _survey_service(request).update_survey(owner_id, survey_id, patch)
    return json_response(survey)


@router.post("/api/surveys/{survey_id}/participants", tags=["api/participants"])
async def api_add_participants(
    survey_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    payload = await read_payload(request)
    participants = parse_participants(payload.get("participants"))
    if not participants:
        raise HTTPException(status_code=400, detail="participants is required")
    with domain_errors():
        invitations = _survey_service(request).add_participants(
            owner_id, survey_id, participants
        )
    return json_response({"invitations": invitations}, status_code=201)


@router.delete(
    "/api/surveys/{survey_id}/participants/{enrollment_id}", tags=["api/participants"]
)
async def api_remove_participant(
    survey_id: str,
    enrollment_id: str,
    request: Request,
    owner_id: str = Depends(owner_guard),
) -> Response:
    with domain_errors():
        _survey_service(request).remove_participant(owner_id, survey_id, enrollment_id)
    return Response(status_code=204)


@router.post(
    "/api/surveys/{survey_id}/participants/{enrollment_id}/extend",
    tags=["api/participants"],
)
async def api_extend_token(
    survey_id: str,
    enrollment_id: str,
    request: Request,
    owner_id: str = Depends(owner_guard),
) -> JSONResponse:
    payload = await read_payload(request)
    expires_at = payload_dt(payload, "expires_at")
    if expires_at is None:
        raise HTTPException(status_code=400, detail="expires_at is required")
    with domain_errors():
        extended = _survey_service(request).extend_token(
            owner_id, survey_id, enrollment_id, expires_at
        )
    return json_response(extended)


@router.post(
    "/api/surveys/{survey_id}/participants/{enrollment_id}/reissue",
    tags=["api/participants"],
)
async def api_reissue_token(
    survey_id: str,
    enrollment_id: str,
    request: Request,
    owner_id: str = Depends(owner_guard),
) -> JSONResponse:
    with domain_errors():
        invitation = _survey_service(request).reissue_token(
            owner_id, survey_id, enrollment_id
        )
    return json_response(invitation)


@router.get("/api/surveys/{survey_id}/results", tags=["api/results"])
async def api_list_results(
    survey_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    with domain_errors():
        results = _survey_service(request).get_results(owner_id, survey_id)
    return json_response(results)


@router.get(
    "/api/surveys/{survey_id}/participants/{enrollment_id}/result",
    tags=["api/results"],
)
async def api_get_enrollment_result(
    survey_id: str,
    enrollment_id: str,
    request: Request,
    owner_id: str = Depends(owner_guard),
) -> JSONResponse:
    with domain_errors():
        result = _survey_service(request).get_enrollment_result(
            owner_id, survey_id, enrollment_id
        )
    return json_response(result)
