from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import select

import judgesync.db.session as db_session_module
from judgesync.core.config import get_settings
from judgesync.db.init_db import initialize_database
from judgesync.db.models import Court, Judge
from judgesync.records.service import RecordService, judge_row


def make_records(tmp_path: Path) -> RecordService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JUDGESYNC_STATE_ROOT"] = state_root.as_posix()
    os.environ.pop("JUDGESYNC_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return RecordService(db_session_module.get_session_factory())


def test_upsert_inserts_then_updates_by_external_id(tmp_path: Path) -> None:
    records = make_records(tmp_path)

    first = records.upsert_courts([{"id": "ca1", "full_name": "First Circuit", "jurisdiction": "F"}])
    assert first.to_dict() == {"inserted": 1, "updated": 0, "skipped": 0}

    second = records.upsert_courts([{"id": "ca1", "full_name": "First Circuit Court of Appeals", "jurisdiction": "F"}])
    assert second.to_dict() == {"inserted": 0, "updated": 1, "skipped": 0}
    assert records.count(Court) == 1

    with db_session_module.get_session_factory()() as session:
        court = session.scalars(select(Court).where(Court.external_id == "ca1")).one()
    assert court.name == "First Circuit Court of Appeals"
    assert court.payload["full_name"] == "First Circuit Court of Appeals"


def test_rows_without_id_are_skipped_and_duplicates_collapse(tmp_path: Path) -> None:
    records = make_records(tmp_path)
    result = records.upsert_judges(
        [{"name_full": "No Id"}, {"id": 7, "name_full": "Old Name"}, {"id": 7, "name_full": "New Name"}],
        jurisdiction="CA",
    )
    assert result.to_dict() == {"inserted": 1, "updated": 0, "skipped": 1}

    with db_session_module.get_session_factory()() as session:
        judge = session.scalars(select(Judge).where(Judge.external_id == "7")).one()
    assert judge.name == "New Name"
    assert judge.jurisdiction == "CA"


def test_judge_name_falls_back_to_name_parts() -> None:
    row = judge_row({"id": 12, "name_first": "Ada", "name_middle": None, "name_last": "Park"})
    assert row is not None
    assert row["name"] == "Ada Park"
    assert row["external_id"] == "12"

