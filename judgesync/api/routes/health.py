from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from judgesync.core.config import get_settings
from judgesync.db.session import get_engine

router = APIRouter(tags=["health"])


def _database_status() -> str:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return "unavailable"
    return "ok"


@router.get("/health")
def get_health() -> dict[str, object]:
    settings = get_settings()
    database = _database_status()
    return {
        "status": "ok" if database == "ok" else "degraded",
        "service": settings.app_name,
        "environment": settings.environment,
        "database": database,
        "rate_limit_mode": settings.rate_limit_mode,
        "timestamp": datetime.now(tz=timezone.utc),
    }
