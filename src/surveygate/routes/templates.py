from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from surveygate.routes.common import domain_errors, json_response, owner_guard, read_payload

router = APIRouter()


def _template_service(request: Request):
    return request.app.state.template_service


@router.get("/api/templates", tags=["api/templates"])
async def api_list_templates(
    request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    with domain_errors():
        templates = _template_service(request).list_templates(owner_id)
    return json_response(templates)


@router.post("/api/templates", tags=["api/templates"])
async def api_create_template(
    request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    payload = await read_payload(request)
    title = str(payload.get("title", "")).strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    data: dict[str, Any] = {
        "title": title,
        "description": str(payload.get("description") or "").strip() or None,
        "schema_json": payload.get("schema_json"),
    }
    with domain_errors():
        template = _template_service(request).create_template(owner_id, data)
    return json_response(template, status_code=201)


@router.get("/api/templates/{template_id}", tags=["api/templates"])
async def api_get_template(
    template_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    with domain_errors():
        template = _template_service(request).get_template(owner_id, template_id)
    return json_response(template)


@router.put("/api/templates/{template_id}", tags=["api/templates"])
async def api_update_template(
    template_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    payload = await read_payload(request)
    patch: dict[str, Any] = {}
    if "title" in payload:
        title = str(payload.get("title", "")).strip()
        if not title:
            raise HTTPException(status_code=400, detail="title is required")
        patch["title"] = title
    if "description" in payload:
        patch["description"] = str(payload.get("description") or "").strip() or None
    if "schema_json" in payload:
        patch["schema_json"] = payload.get("schema_json")
    with domain_errors():
        template = _template_service(request).update_template(owner_id, template_id, patch)
    return json_response(template)


@router.post("/api/templates/{template_id}/publish", tags=["api/templates"])
async def api_publish_template(
    template_id: str, request: Request, owner_id: str = Depends(owner_guard)
) -> JSONResponse:
    with domain_errors():
        template = _template_service(request).publish_template(owner_id, template_id)
    return json_response(template)
