from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from judgesync.core.config import get_settings
from judgesync.db.models import SyncJobType
from judgesync.db.session import get_session_factory
from judgesync.external.client import CourtListenerClient
from judgesync.external.rate_limiter import build_rate_limiter
from judgesync.jobs.service import QueueManager
from judgesync.records.service import RecordService
from judgesync.worker.handlers import HandlerContext, build_default_registry
from judgesync.worker.loop import SyncWorker


def _queue_manager() -> QueueManager:
    return QueueManager(settings=get_settings(), session_factory=get_session_factory())


def enqueue_sync_job(
    job_type: SyncJobType | str,
    options: dict[str, Any] | None = None,
    *,
    priority: int | None = None,
    scheduled_for: datetime | None = None,
    max_retries: int | None = None,
) -> str:
    return _queue_manager().enqueue(
        job_type,
        options=options,
        priority=priority,
        scheduled_for=scheduled_for,
        max_retries=max_retries,
    )


WEEKLY_SYNC_PLAN: tuple[tuple[SyncJobType, dict[str, Any], int, timedelta], ...] = (
    (SyncJobType.COURTS, {"batch_size": 30, "jurisdiction": "CA"}, 200, timedelta(0)),
    (SyncJobType.JUDGES, {"batch_size": 15, "jurisdiction": "CA"}, 150, timedelta(minutes=30)),
    (SyncJobType.JUDGES, {"batch_size": 20, "jurisdiction": "US", "discover_limit": 1000}, 140, timedelta(minutes=45)),
    (
        SyncJobType.DECISIONS,
        {"batch_size": 3, "days_since_last": 7, "max_decisions": 30},
        100,
        timedelta(minutes=60),
    ),
)


def schedule_weekly_sync(now: datetime | None = None) -> list[str]:
    """Queue the weekly refresh batch, staggered so courts land before judges and decisions."""
    base = now or datetime.now(tz=timezone.utc)
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    queue = _queue_manager()
    return [
        queue.enqueue(job_type, options=dict(options), priority=priority, scheduled_for=base + offset)
        for job_type, options, priority, offset in WEEKLY_SYNC_PLAN
    ]


def build_default_worker(*, worker_id: str | None = None) -> SyncWorker:
    settings = get_settings()
    session_factory = get_session_factory()
    client = CourtListenerClient(settings, limiter=build_rate_limiter(settings, session_factory))
    context = HandlerContext(settings=settings, client=client, records=RecordService(session_factory))
    return SyncWorker(
        QueueManager(settings=settings, session_factory=session_factory),
        build_default_registry(),
        context,
        worker_id=worker_id,
    )
