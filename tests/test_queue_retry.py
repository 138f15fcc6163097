from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import judgesync.db.session as db_session_module
from judgesync.core.backoff import BackoffPolicy
from judgesync.core.config import get_settings
from judgesync.db.init_db import initialize_database
from judgesync.db.models import SyncJobStatus, SyncJobType
from judgesync.jobs.service import InvalidJobStateError, JobNotFoundError, QueueManager

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return self.now


def make_queue(
    tmp_path: Path,
    *,
    clock: FakeClock,
    backoff: BackoffPolicy | None = None,
    error_max_chars: int = 4000,
) -> QueueManager:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JUDGESYNC_STATE_ROOT"] = state_root.as_posix()
    os.environ["JUDGESYNC_JOB_CLAIM_STRATEGY"] = "auto"
    os.environ["JUDGESYNC_JOB_DEFAULT_MAX_RETRIES"] = "3"
    os.environ["JUDGESYNC_JOB_ERROR_MESSAGE_MAX_CHARS"] = str(error_max_chars)
    os.environ.pop("JUDGESYNC_DATABASE_URL", None)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return QueueManager(get_settings(), db_session_module.get_session_factory(), backoff=backoff, clock=clock)


def claim_due(queue: QueueManager, clock: FakeClock, job_id: str) -> None:
    snapshot = queue.get_job_status(job_id)
    if snapshot.scheduled_for > clock.now:
        clock.now = snapshot.scheduled_for
    claimed = queue.claim("worker-a")
    assert claimed is not None and claimed.id == job_id


def test_job_retries_with_growing_schedule_then_fails_terminally(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = make_queue(tmp_path, clock=clock)
    job_id = queue.enqueue(SyncJobType.COURTS, {"jurisdiction": "CA"})

    schedules = [queue.get_job_status(job_id).scheduled_for]
    for expected_retry_count in (1, 2):
        claim_due(queue, clock, job_id)
        snapshot = queue.fail(job_id, RuntimeError("upstream 503"), worker_id="worker-a")
        assert snapshot.status == SyncJobStatus.PENDING
        assert snapshot.retry_count == expected_retry_count
        assert snapshot.claimed_by is None
        assert snapshot.started_at is None
        assert snapshot.error_message == "RuntimeError: upstream 503"
        assert snapshot.scheduled_for > clock.now
        schedules.append(snapshot.scheduled_for)

    claim_due(queue, clock, job_id)
    final = queue.fail(job_id, RuntimeError("upstream 503"), worker_id="worker-a")
    assert final.status == SyncJobStatus.FAILED
    assert final.retry_count == 3
    assert final.retry_count <= final.max_retries
    assert final.completed_at == clock.now

    assert schedules == sorted(schedules)
    assert len(set(schedules)) == len(schedules)


def test_job_backoff_uses_retry_count_exponent(tmp_path: Path) -> None:
    clock = FakeClock()
    backoff = BackoffPolicy(base_seconds=60, max_seconds=3600, jitter_ratio=0.0)
    queue = make_queue(tmp_path, clock=clock, backoff=backoff)
    job_id = queue.enqueue(SyncJobType.JUDGES, max_retries=5)

    claim_due(queue, clock, job_id)
    first = queue.fail(job_id, "boom")
    assert first.scheduled_for == T0 + timedelta(seconds=60)

    claim_due(queue, clock, job_id)
    second = queue.fail(job_id, "boom")
    assert second.scheduled_for == T0 + timedelta(seconds=60 + 120)


def test_retry_schedule_never_moves_backwards(tmp_path: Path) -> None:
    clock = FakeClock()
    backoff = BackoffPolicy(base_seconds=0.001, max_seconds=0.001, jitter_ratio=0.0)
    queue = make_queue(tmp_path, clock=clock, backoff=backoff)
    job_id = queue.enqueue(SyncJobType.DECISIONS, scheduled_for=T0 + timedelta(minutes=10), max_retries=5)

    claim_due(queue, clock, job_id)
    clock.now = T0
    snapshot = queue.fail(job_id, "quota")
    assert snapshot.scheduled_for == T0 + timedelta(minutes=10, seconds=1)


def test_single_attempt_job_fails_without_retry(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = make_queue(tmp_path, clock=clock)
    job_id = queue.enqueue(SyncJobType.COURTS, max_retries=1)

    claim_due(queue, clock, job_id)
    snapshot = queue.fail(job_id, ValueError("bad options"))
    assert snapshot.status == SyncJobStatus.FAILED
    assert snapshot.retry_count == 1


def test_fail_and_complete_require_running_job(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = make_queue(tmp_path, clock=clock)
    job_id = queue.enqueue(SyncJobType.COURTS, max_retries=1)

    try:
        queue.complete(job_id)
    except InvalidJobStateError:
        pass
    else:
        raise AssertionError("expected InvalidJobStateError for pending job")

    claim_due(queue, clock, job_id)
    queue.fail(job_id, "fatal")

    try:
        queue.fail(job_id, "again")
    except InvalidJobStateError:
        pass
    else:
        raise AssertionError("expected InvalidJobStateError for failed job")

    try:
        queue.complete("missing-job")
    except JobNotFoundError:
        pass
    else:
        raise AssertionError("expected JobNotFoundError")


def test_completed_job_cannot_be_reclaimed_or_completed_twice(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = make_queue(tmp_path, clock=clock)
    job_id = queue.enqueue(SyncJobType.COURTS)

    claim_due(queue, clock, job_id)
    queue.complete(job_id, {"inserted": 4})
    assert queue.claim("worker-b") is None

    try:
        queue.complete(job_id, {"inserted": 4})
    except InvalidJobStateError:
        pass
    else:
        raise AssertionError("expected InvalidJobStateError")
    assert queue.get_job_status(job_id).result == {"inserted": 4}


def test_error_message_is_truncated(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = make_queue(tmp_path, clock=clock, error_max_chars=40)
    job_id = queue.enqueue(SyncJobType.COURTS, max_retries=1)

    claim_due(queue, clock, job_id)
    snapshot = queue.fail(job_id, RuntimeError("x" * 500))
    assert snapshot.error_message is not None
    assert len(snapshot.error_message) == 40
    assert snapshot.error_message.startswith("RuntimeError: ")


def test_metrics_count_statuses_and_eligible_backlog(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = make_queue(tmp_path, clock=clock)
    queue.enqueue(SyncJobType.COURTS)
    queue.enqueue(SyncJobType.JUDGES, scheduled_for=T0 + timedelta(hours=2))
    running_id = queue.enqueue(SyncJobType.DECISIONS, priority=10)

    clock.advance(30)
    claimed = queue.claim("worker-a")
    assert claimed is not None and claimed.id == running_id

    metrics = queue.get_metrics()
    assert metrics.pending == 2
    assert metrics.running == 1
    assert metrics.eligible_pending == 1
    assert metrics.oldest_eligible_age_seconds == 30.0
    assert metrics.stale_running == 0
    assert metrics.by_type["decisions"] == {"running": 1}

    clock.advance(2 * 3600)
    assert queue.get_metrics().stale_running == 1
