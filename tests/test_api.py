from __future__ import annotations

import os
from pathlib import Path

from fastapi.testclient import TestClient

import judgesync.db.session as db_session_module
from judgesync.api.app import create_app
from judgesync.core.config import get_settings


def make_client(tmp_path: Path) -> TestClient:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JUDGESYNC_STATE_ROOT"] = state_root.as_posix()
    os.environ["JUDGESYNC_JOB_CLAIM_STRATEGY"] = "auto"
    os.environ["JUDGESYNC_JOB_DEFAULT_MAX_RETRIES"] = "3"
    os.environ.pop("JUDGESYNC_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    return TestClient(create_app())


def test_health_endpoint(tmp_path: Path) -> None:
    with make_client(tmp_path) as client:
        response = client.get("/api/v1/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["service"] == "JudgeSync"
    assert payload["database"] == "ok"


def test_enqueue_and_fetch_job(tmp_path: Path) -> None:
    with make_client(tmp_path) as client:
        created = client.post("/api/v1/jobs", json={"type": "courts", "options": {"jurisdiction": "CA"}, "priority": 200})
        assert created.status_code == 201
        job = created.json()
        assert job["type"] == "courts"
        assert job["status"] == "pending"
        assert job["priority"] == 200
        assert job["retry_count"] == 0
        assert job["max_retries"] == 3

        fetched = client.get(f"/api/v1/jobs/{job['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["options"] == {"jurisdiction": "CA"}

        missing = client.get("/api/v1/jobs/does-not-exist")
        assert missing.status_code == 404


def test_enqueue_rejects_unknown_type_and_extra_fields(tmp_path: Path) -> None:
    with make_client(tmp_path) as client:
        assert client.post("/api/v1/jobs", json={"type": "cleanup"}).status_code == 422
        assert client.post("/api/v1/jobs", json={"type": "courts", "dry_run": True}).status_code == 422


def test_list_jobs_paginates_newest_first(tmp_path: Path) -> None:
    with make_client(tmp_path) as client:
        ids = [client.post("/api/v1/jobs", json={"type": "judges"}).json()["id"] for _ in range(3)]

        first_page = client.get("/api/v1/jobs", params={"limit": 2})
        assert first_page.status_code == 200
        body = first_page.json()
        assert [item["id"] for item in body["items"]] == [ids[2], ids[1]]
        assert body["next_cursor"] == ids[1]

        second_page = client.get("/api/v1/jobs", params={"limit": 2, "cursor": body["next_cursor"]}).json()
        assert [item["id"] for item in second_page["items"]] == [ids[0]]
        assert second_page["next_cursor"] is None

        filtered = client.get("/api/v1/jobs", params={"type": "courts"}).json()
        assert filtered["items"] == []

        invalid = client.get("/api/v1/jobs", params={"cursor": "missing"})
        assert invalid.status_code == 422


def test_weekly_sync_and_metrics(tmp_path: Path) -> None:
    with make_client(tmp_path) as client:
        scheduled = client.post("/api/v1/sync/weekly")
        assert scheduled.status_code == 201
        job_ids = scheduled.json()["job_ids"]
        assert len(job_ids) == 4

        jobs = [client.get(f"/api/v1/jobs/{job_id}").json() for job_id in job_ids]
        assert [job["type"] for job in jobs] == ["courts", "judges", "judges", "decisions"]
        assert [job["priority"] for job in jobs] == [200, 150, 140, 100]

        metrics = client.get("/api/v1/jobs/metrics")
        assert metrics.status_code == 200
        body = metrics.json()
        assert body["pending"] == 4
        assert body["eligible_pending"] == 1
        assert body["by_type"]["judges"] == {"pending": 2}
