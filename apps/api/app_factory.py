# apps/api/app_factory.py
from __future__ import annotations
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from apps.api.jobs import create_jobs_router
from apps.common.log import setup_logging
from services.pipeline import ModerationPipeline


def create_app(*, pipeline_provider: Optional[Callable[[], ModerationPipeline]] = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title="Bulk Moderation API")

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    if pipeline_provider is not None:
        app.include_router(create_jobs_router(pipeline_provider=pipeline_provider))

    return app
