from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from judgesync.db.models import Court, Decision, Judge

logger = logging.getLogger(__name__)

UPSERT_DIALECTS = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}
MAX_NAME_CHARS = 512
MAX_CASE_NAME_CHARS = 1024


@dataclass(slots=True)
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def merge(self, other: "UpsertResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped

    def to_dict(self) -> dict[str, int]:
        return {"inserted": self.inserted, "updated": self.updated, "skipped": self.skipped}


def _external_id(payload: dict[str, Any]) -> str | None:
    raw = payload.get("id")
    if raw is None or raw == "":
        return None
    return str(raw)


def _clip(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit]


def court_row(payload: dict[str, Any]) -> dict[str, Any] | None:
    external_id = _external_id(payload)
    if external_id is None:
        return None
    name = payload.get("full_name") or payload.get("short_name") or external_id
    return {
        "external_id": external_id,
        "name": _clip(str(name), MAX_NAME_CHARS),
        "jurisdiction": payload.get("jurisdiction"),
        "payload": payload,
    }


def judge_row(payload: dict[str, Any], *, jurisdiction: str | None = None) -> dict[str, Any] | None:
    external_id = _external_id(payload)
    if external_id is None:
        return None
    name = payload.get("name_full")
    if not name:
        parts = [payload.get("name_first"), payload.get("name_middle"), payload.get("name_last")]
        name = " ".join(str(part) for part in parts if part)
    return {
        "external_id": external_id,
        "name": _clip(str(name or f"Person {external_id}"), MAX_NAME_CHARS),
        "jurisdiction": jurisdiction,
        "payload": payload,
    }


def decision_row(payload: dict[str, Any], *, court: str | None = None) -> dict[str, Any] | None:
    external_id = _external_id(payload)
    if external_id is None:
        return None
    case_name = payload.get("case_name") or payload.get("case_name_full") or f"Cluster {external_id}"
    date_filed = payload.get("date_filed")
    return {
        "external_id": external_id,
        "case_name": _clip(str(case_name), MAX_CASE_NAME_CHARS),
        "court_external_id": court or payload.get("court_id"),
        "date_filed": str(date_filed)[:10] if date_filed else None,
        "payload": payload,
    }


class RecordService:
    """Idempotent upserts of CourtListener records keyed by ``external_id``.

    Each call writes one batch in its own transaction, so a handler that is
    retried after a partial run simply rewrites the pages it already stored.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, clock: Callable[[], datetime] | None = None):
        self._session_factory = session_factory
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(tz=timezone.utc)

    def _upsert(self, model: type[Court] | type[Judge] | type[Decision], rows: Iterable[dict[str, Any] | None]) -> UpsertResult:
        result = UpsertResult()
        deduplicated: dict[str, dict[str, Any]] = {}
        for row in rows:
            if row is None:
                result.skipped += 1
                continue
            deduplicated[row["external_id"]] = row
        if not deduplicated:
            return result

        now = self._now()
        values = [{**row, "synced_at": now, "updated_at": now} for row in deduplicated.values()]
        update_columns = [key for key in values[0] if key != "external_id"]

        with self._session_factory() as session:
            existing = set(
                session.scalars(select(model.external_id).where(model.external_id.in_(list(deduplicated)))).all()
            )
            dialect_name = session.get_bind().dialect.name
            insert_factory = UPSERT_DIALECTS.get(dialect_name)
            if insert_factory is not None:
                stmt = insert_factory(model).values(values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["external_id"],
                    set_={column: stmt.excluded[column] for column in update_columns},
                )
                session.execute(stmt)
            else:
                for row in values:
                    record = session.scalar(select(model).where(model.external_id == row["external_id"]))
                    if record is None:
                        session.add(model(**row))
                    else:
                        for column in update_columns:
                            setattr(record, column, row[column])
            session.commit()

        result.updated += len(existing)
        result.inserted += len(deduplicated) - len(existing)
        logger.debug(
            "Upserted records",
            extra={"table": model.__tablename__, **result.to_dict()},
        )
        return result

    def upsert_courts(self, payloads: Iterable[dict[str, Any]]) -> UpsertResult:
        return self._upsert(Court, (court_row(payload) for payload in payloads))

    def upsert_judges(self, payloads: Iterable[dict[str, Any]], *, jurisdiction: str | None = None) -> UpsertResult:
        return self._upsert(Judge, (judge_row(payload, jurisdiction=jurisdiction) for payload in payloads))

    def upsert_decisions(self, payloads: Iterable[dict[str, Any]], *, court: str | None = None) -> UpsertResult:
        return self._upsert(Decision, (decision_row(payload, court=court) for payload in payloads))

    def count(self, model: type[Court] | type[Judge] | type[Decision]) -> int:
        with self._session_factory() as session:
            return int(session.scalar(select(func.count()).select_from(model)) or 0)

    def latest_decision_date(self, court: str | None = None) -> str | None:
        stmt = select(func.max(Decision.date_filed))
        if court is not None:
            stmt = stmt.where(Decision.court_external_id == court)
        with self._session_factory() as session:
            return session.scalar(stmt)
