from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import create_engine, text

import judgesync.db.session as db_session_module
from judgesync.core.config import get_settings
from judgesync.db.init_db import initialize_database
from judgesync.db.migrations import MIGRATIONS, apply_migrations


def _column_names(conn, table_name: str) -> set[str]:  # type: ignore[no-untyped-def]
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:  # type: ignore[no-untyped-def]
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def test_apply_migrations_upgrades_legacy_queue_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE sync_jobs (
                    id VARCHAR(36) PRIMARY KEY,
                    type VARCHAR(16) NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    options JSON NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    scheduled_for DATETIME NOT NULL,
                    result JSON,
                    error_message TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    started_at DATETIME,
                    completed_at DATETIME
                )
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE TABLE courts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id VARCHAR(64) NOT NULL UNIQUE,
                    name VARCHAR(512) NOT NULL,
                    jurisdiction VARCHAR(64),
                    payload JSON NOT NULL,
                    synced_at DATETIME NOT NULL,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )

    apply_migrations(engine)

    with engine.connect() as conn:
        assert "claimed_by" in _column_names(conn, "sync_jobs")
        assert {
            "ix_sync_jobs_claim_order",
            "ix_sync_jobs_status_scheduled",
            "ix_sync_jobs_type_status",
            "ix_sync_jobs_created_id",
        } <= _index_names(conn, "sync_jobs")
        assert "ix_courts_jurisdiction" in _index_names(conn, "courts")
        assert {"bucket_key", "tokens", "updated_at_ms"} <= _column_names(conn, "api_rate_limits")

        versions = [int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version"))]
        assert versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_is_idempotent(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{(tmp_path / 'twice.sqlite3').as_posix()}", future=True)
    assert apply_migrations(engine) == [step.version for step in MIGRATIONS]
    assert apply_migrations(engine) == []

    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM schema_migrations")).scalar_one()
    assert count == len(MIGRATIONS)


def test_initialize_database_builds_full_schema(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JUDGESYNC_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("JUDGESYNC_DATABASE_URL", None)
    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None

    assert initialize_database() == [step.version for step in MIGRATIONS]
    assert initialize_database() == []

    engine = db_session_module.get_engine()
    assert engine.url.database == (get_settings().state_root / "judgesync.sqlite3").as_posix()
    with engine.connect() as conn:
        tables = {
            str(row[0]) for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'table'")).all()
        }
        journal_mode = conn.execute(text("PRAGMA journal_mode")).scalar_one()
    assert {"sync_jobs", "courts", "judges", "decisions", "api_rate_limits", "schema_migrations"} <= tables
    assert str(journal_mode).lower() == "wal"


def test_dispose_engine_forgets_cached_engine(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JUDGESYNC_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("JUDGESYNC_DATABASE_URL", None)
    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None

    first = db_session_module.get_engine()
    db_session_module.get_session_factory()
    db_session_module.dispose_engine()

    assert db_session_module._engine is None
    assert db_session_module._session_factory is None
    assert db_session_module.get_engine() is not first
