from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from surveygate.errors import (
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    ScheduleInvalidError,
    StatusTransitionError,
    SurveyGateError,
    TemplateSchemaError,
    TokenExpiredError,
    TokenNotYetValidError,
    TokenUsedError,
)
from surveygate.utils import parse_dt, to_jsonable

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: list[tuple[type[SurveyGateError], int]] = [
    (InvalidTokenError, 401),
    (TokenExpiredError, 410),
    (TokenUsedError, 403),
    (TokenNotYetValidError, 403),
    (ScheduleInvalidError, 400),
    (StatusTransitionError, 400),
    (TemplateSchemaError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
]


def owner_guard(request: Request) -> str:
    return request.app.state.auth_provider.resolve_owner(request)


def status_for(exc: SurveyGateError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


@contextmanager
def domain_errors() -> Iterator[None]:
    try:
        yield
    except SurveyGateError as exc:
        status_code = status_for(exc)
        if status_code == 500:
            logger.exception("Unhandled domain error")
            raise HTTPException(status_code=500, detail="internal error") from exc
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc


async def read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="request body must be a JSON object")
    return payload


def payload_dt(payload: dict[str, Any], key: str) -> Any:
    try:
        return parse_dt(payload.get(key))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{key} is not a valid datetime") from exc


def json_response(value: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(to_jsonable(value), status_code=status_code)
