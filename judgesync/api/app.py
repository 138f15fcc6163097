from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from judgesync.api.routes.health import router as health_router
from judgesync.api.routes.jobs import router as jobs_router
from judgesync.api.routes.sync import router as sync_router
from judgesync.core.config import get_settings
from judgesync.core.logging import configure_logging
from judgesync.db.init_db import initialize_database
from judgesync.db.session import dispose_engine


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield
    dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")
    return app
