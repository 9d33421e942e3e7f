from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from surveygate.routes.common import domain_errors, json_response, payload_dt, read_payload

router = APIRouter()

ANSWER_TEXT_KEYS = ("question_code", "section_code", "repeat_path", "value_text")


def _survey_service(request: Request):
    return request.app.state.survey_service


def _token_from(payload: dict[str, Any]) -> str:
    token = payload.get("token")
    if not isinstance(token, str) or not token.strip():
        raise HTTPException(status_code=400, detail="token is required")
    return token.strip()


def parse_answers(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="answers must be a list")
    answers: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail="answer must be an object")
        answer: dict[str, Any] = {}
        for key in ANSWER_TEXT_KEYS:
            value = item.get(key)
            answer[key] = None if value is None else str(value)
        number = item.get("value_number")
        if number is not None and (isinstance(number, bool) or not isinstance(number, (int, float))):
            raise HTTPException(status_code=400, detail="value_number must be a number")
        answer["value_number"] = number
        flag = item.get("value_bool")
        if flag is not None and not isinstance(flag, bool):
            raise HTTPException(status_code=400, detail="value_bool must be a boolean")
        answer["value_bool"] = flag
        answer["value_date"] = payload_dt(item, "value_date")
        answer["value_datetime"] = payload_dt(item, "value_datetime")
        answer["value_json"] = item.get("value_json")
        answers.append(answer)
    return answers


@router.get("/api/public/access", tags=["api/public"])
async def api_access_by_query(request: Request) -> JSONResponse:
    token = _token_from(dict(request.query_params))
    with domain_errors():
        access = _survey_service(request).access_by_token(token)
    return json_response(access)


@router.post("/api/public/access", tags=["api/public"])
async def api_access_by_body(request: Request) -> JSONResponse:
    payload = await read_payload(request)
    with domain_errors():
        access = _survey_service(request).access_by_token(_token_from(payload))
    return json_response(access)


@router.post("/api/public/responses/start", tags=["api/public"])
async def api_start_response(request: Request) -> JSONResponse:
    payload = await read_payload(request)
    token = _token_from(payload)
    channel = payload.get("channel")
    with domain_errors():
        started = _survey_service(request).start_response(
            token, str(channel) if channel else None
        )
    return json_response(started)


@router.post("/api/public/responses/submit", tags=["api/public"])
async def api_submit_response(request: Request) -> JSONResponse:
    payload = await read_payload(request)
    token = _token_from(payload)
    submission = {
        "answers": parse_answers(payload.get("answers")),
        "channel": str(payload["channel"]) if payload.get("channel") else None,
    }
    with domain_errors():
        result = _survey_service(request).submit_response(token, submission)
    return json_response(result)


@router.get("/api/public/result", tags=["api/public"])
async def api_get_own_result(request: Request) -> JSONResponse:
    token = _token_from(dict(request.query_params))
    with domain_errors():
        result = _survey_service(request).get_result_by_token(token)
    return json_response(result)


@router.get("/healthz", tags=["system"])
async def healthz() -> dict[str, str]:
    return {"status": "ok"}
