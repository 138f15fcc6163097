from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_sync_job_claim_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "sync_jobs"):
        return

    if not _index_exists(conn, "sync_jobs", "ix_sync_jobs_claim_order"):
        conn.execute(text("CREATE INDEX ix_sync_jobs_claim_order ON sync_jobs (status, priority, created_at)"))

    if not _index_exists(conn, "sync_jobs", "ix_sync_jobs_status_scheduled"):
        conn.execute(text("CREATE INDEX ix_sync_jobs_status_scheduled ON sync_jobs (status, scheduled_for)"))

    if not _index_exists(conn, "sync_jobs", "ix_sync_jobs_type_status"):
        conn.execute(text("CREATE INDEX ix_sync_jobs_type_status ON sync_jobs (type, status)"))

    if not _index_exists(conn, "sync_jobs", "ix_sync_jobs_created_id"):
        conn.execute(text("CREATE INDEX ix_sync_jobs_created_id ON sync_jobs (created_at, id)"))


def _migration_0003_sync_job_claimed_by(conn: Connection) -> None:
    if _table_exists(conn, "sync_jobs") and not _column_exists(conn, "sync_jobs", "claimed_by"):
        conn.execute(text("ALTER TABLE sync_jobs ADD COLUMN claimed_by VARCHAR(128)"))


def _migration_0004_shared_api_rate_limit_table(conn: Connection) -> None:
    if _table_exists(conn, "api_rate_limits"):
        return
    conn.execute(
        text(
            """
            CREATE TABLE api_rate_limits (
                bucket_key VARCHAR(64) PRIMARY KEY,
                tokens FLOAT NOT NULL,
                updated_at_ms BIGINT NOT NULL DEFAULT 0
            )
            """
        )
    )


def _migration_0005_domain_record_indexes(conn: Connection) -> None:
    if _table_exists(conn, "courts") and not _index_exists(conn, "courts", "ix_courts_jurisdiction"):
        conn.execute(text("CREATE INDEX ix_courts_jurisdiction ON courts (jurisdiction)"))

    if _table_exists(conn, "judges") and not _index_exists(conn, "judges", "ix_judges_jurisdiction"):
        conn.execute(text("CREATE INDEX ix_judges_jurisdiction ON judges (jurisdiction)"))

    if _table_exists(conn, "decisions") and not _index_exists(conn, "decisions", "ix_decisions_court_filed"):
        conn.execute(text("CREATE INDEX ix_decisions_court_filed ON decisions (court_external_id, date_filed)"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="sync_job_claim_indexes", apply=_migration_0002_sync_job_claim_indexes),
    MigrationStep(version=3, name="sync_job_claimed_by", apply=_migration_0003_sync_job_claimed_by),
    MigrationStep(
        version=4,
        name="shared_api_rate_limit_table",
        apply=_migration_0004_shared_api_rate_limit_table,
    ),
    MigrationStep(version=5, name="domain_record_indexes", apply=_migration_0005_domain_record_indexes),
)


def apply_migrations(engine: Engine) -> list[int]:
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied
