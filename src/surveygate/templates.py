from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from surveygate.errors import NotFoundError, TemplateSchemaError
from surveygate.storage import Storage
from surveygate.utils import ensure_aware, new_ulid, now_utc

logger = logging.getLogger(__name__)

DRAFT = "draft"
PUBLISHED = "published"


def check_schema(schema: Any) -> dict[str, Any]:
    if not isinstance(schema, dict) or not schema:
        raise TemplateSchemaError("schema must be a non-empty JSON object")
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as exc:
        raise TemplateSchemaError(f"schema is not a valid JSON Schema: {exc.message}") from exc
    return schema


class TemplateService:
    def __init__(
        self, storage: Storage, clock: Callable[[], datetime] = now_utc
    ) -> None:
        self._storage = storage
        self._clock = clock

    def _owned(self, owner_id: str, template_id: str) -> dict[str, Any]:
        template = self._storage.templates.get_template(owner_id, template_id)
        if not template:
            raise NotFoundError(f"template {template_id}")
        return template

    def create_template(self, owner_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        schema = check_schema(payload.get("schema_json"))
        now = ensure_aware(self._clock())
        template_id = new_ulid()
        self._storage.templates.create_template(
            {
                "id": template_id,
                "owner_id": owner_id,
                "title": payload["title"],
                "description": payload.get("description"),
                "version": 1,
                "status": DRAFT,
                "draft_schema_json": schema,
                "published_schema_json": None,
                "created_at": now,
                "updated_at": now,
                "published_at": None,
            }
        )
        logger.info("Template created owner_id=%s template_id=%s", owner_id, template_id)
        return self._owned(owner_id, template_id)

    def list_templates(self, owner_id: str) -> list[dict[str, Any]]:
        return self._storage.templates.list_templates(owner_id)

    def get_template(self, owner_id: str, template_id: str) -> dict[str, Any]:
        return self._owned(owner_id, template_id)

    def update_template(
        self, owner_id: str, template_id: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        self._owned(owner_id, template_id)
        updates: dict[str, Any] = {}
        if "title" in patch:
            updates["title"] = patch["title"]
        if "description" in patch:
            updates["description"] = patch["description"]
        if "schema_json" in patch:
            updates["draft_schema_json"] = check_schema(patch["schema_json"])
        updates["updated_at"] = ensure_aware(self._clock())
        return self._storage.templates.update_template(owner_id, template_id, updates)

    def publish_template(self, owner_id: str, template_id: str) -> dict[str, Any]:
        template = self._owned(owner_id, template_id)
        schema = check_schema(template.get("draft_schema_json"))
        version = template.get("version") or 1
        if template.get("published_at") is not None:
            version += 1
        now = ensure_aware(self._clock())
        published = self._storage.templates.update_template(
            owner_id,
            template_id,
            {
                "status": PUBLISHED,
                "version": version,
                "published_schema_json": schema,
                "published_at": now,
                "updated_at": now,
            },
        )
        logger.info("Template published template_id=%s version=%d", template_id, version)
        return published
