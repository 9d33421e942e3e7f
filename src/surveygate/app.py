from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

from fastapi import FastAPI

from surveygate.auth import get_auth_provider
from surveygate.config import Settings, ensure_dirs
from surveygate.routes.public import router as public_router
from surveygate.routes.surveys import router as surveys_router
from surveygate.routes.templates import router as templates_router
from surveygate.scheduler import SurveyScheduler
from surveygate.service import SurveyService
from surveygate.storage import Storage, init_storage
from surveygate.templates import TemplateService
from surveygate.tokens import TokenCodec
from surveygate.utils import now_utc

logger = logging.getLogger(__name__)


def build_scheduler(
    settings: Settings, storage: Storage, clock: Callable[[], datetime] = now_utc
) -> SurveyScheduler:
    return SurveyScheduler(
        storage.surveys, interval=settings.scheduler_interval_seconds, clock=clock
    )


def create_app(
    settings: Settings | None = None,
    storage: Storage | None = None,
    clock: Callable[[], datetime] = now_utc,
) -> FastAPI:
    settings = settings or Settings()
    if storage is None:
        ensure_dirs(settings)
        storage = init_storage(settings)
    if settings.token_secret == "change-me":
        logger.warning("TOKEN_SECRET is not set; using the insecure default")
    codec = TokenCodec(
        settings.token_secret, timedelta(days=settings.invitation_ttl_days)
    )
    scheduler = build_scheduler(settings, storage, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()

    app = FastAPI(
        lifespan=lifespan,
        openapi_tags=[
            {"name": "api/templates", "description": "REST API: form templates"},
            {"name": "api/surveys", "description": "REST API: surveys"},
            {"name": "api/participants", "description": "REST API: enrollments"},
            {"name": "api/results", "description": "REST API: results"},
            {"name": "api/public", "description": "Participant access by token"},
            {"name": "system", "description": "System"},
        ],
    )

    app.state.storage = storage
    app.state.settings = settings
    app.state.auth_provider = get_auth_provider(settings)
    app.state.scheduler = scheduler
    app.state.survey_service = SurveyService(storage, codec, clock)
    app.state.template_service = TemplateService(storage, clock)

    app.include_router(templates_router)
    app.include_router(surveys_router)
    app.include_router(public_router)

    return app
