from __future__ import annotations

import logging

from sqlalchemy import text

from judgesync.db.migrations import apply_migrations
from judgesync.db.models import Base
from judgesync.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database() -> list[int]:
    """Create missing tables, apply pending migrations and return their versions."""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)
    if applied:
        logger.info(
            "Applied schema migrations",
            extra={"versions": ",".join(str(version) for version in applied), "dialect": engine.dialect.name},
        )

    if engine.dialect.name == "sqlite":
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return applied
