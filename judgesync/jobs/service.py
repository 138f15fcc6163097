from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from judgesync.core.backoff import BackoffPolicy
from judgesync.core.config import Settings
from judgesync.db.models import SyncJob, SyncJobStatus, SyncJobType
from judgesync.jobs.store import JobStore
from judgesync.jobs.types import QueueMetricsSnapshot, SyncJobSnapshot

logger = logging.getLogger(__name__)


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class JobOwnershipError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobListResult:
    items: list[SyncJobSnapshot]
    next_cursor: str | None


ALLOWED_TRANSITIONS: dict[SyncJobStatus, set[SyncJobStatus]] = {
    SyncJobStatus.PENDING: {SyncJobStatus.RUNNING},
    SyncJobStatus.RUNNING: {SyncJobStatus.COMPLETED, SyncJobStatus.PENDING, SyncJobStatus.FAILED},
    SyncJobStatus.COMPLETED: set(),
    SyncJobStatus.FAILED: set(),
}


class QueueManager:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        store: JobStore | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._store = store or JobStore(
            session_factory,
            claim_strategy=settings.job_claim_strategy,
            candidate_batch=settings.job_claim_candidate_batch,
            max_rounds=settings.job_claim_max_rounds,
        )
        self._backoff = backoff or BackoffPolicy(
            base_seconds=settings.job_retry_base_seconds,
            max_seconds=settings.job_retry_max_seconds,
            jitter_ratio=settings.job_retry_jitter_ratio,
        )
        self._clock = clock

    @property
    def store(self) -> JobStore:
        return self._store

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._coerce_utc(self._clock())
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def _enforce_transition(self, from_status: SyncJobStatus, to_status: SyncJobStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def _normalize_type(self, job_type: SyncJobType | str) -> SyncJobType:
        if isinstance(job_type, SyncJobType):
            return job_type
        token = str(job_type).strip().lower()
        try:
            return SyncJobType(token)
        except ValueError as exc:
            allowed = ", ".join(member.value for member in SyncJobType)
            raise ValueError(f"Unknown sync job type: {job_type}. Allowed: {allowed}") from exc

    def _normalize_worker_id(self, worker_id: str | None) -> str | None:
        if worker_id is None:
            return None
        normalized = worker_id.strip()
        if not normalized:
            raise ValueError("worker_id cannot be blank")
        return normalized

    def _error_text(self, error: BaseException | str) -> str:
        if isinstance(error, BaseException):
            detail = str(error) or "no details"
            text = f"{type(error).__name__}: {detail}"
        else:
            text = error
        return text[: self._settings.job_error_message_max_chars]

    def _load_running(self, job_id: str, worker_id: str | None) -> SyncJob:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.status != SyncJobStatus.RUNNING:
            raise InvalidJobStateError(f"Job {job_id} is not running (status={job.status.value})")
        if worker_id is not None and job.claimed_by != worker_id:
            raise JobOwnershipError(f"Job {job_id} is owned by {job.claimed_by!r}, not {worker_id!r}")
        return job

    def _apply(self, job: SyncJob, target: SyncJobStatus, values: dict[str, Any], worker_id: str | None) -> SyncJobSnapshot:
        self._enforce_transition(job.status, target)
        applied = self._store.transition(
            job.id,
            expected_status=SyncJobStatus.RUNNING,
            values={"status": target, **values},
            owner=worker_id,
        )
        if not applied:
            # Another actor moved the job between our read and the guarded update.
            current = self._store.get(job.id)
            status = current.status.value if current is not None else "missing"
            raise InvalidJobStateError(f"Job {job.id} changed concurrently (status={status})")
        return self.get_job_status(job.id)

    def enqueue(
        self,
        job_type: SyncJobType | str,
        options: dict[str, Any] | None = None,
        priority: int | None = None,
        scheduled_for: datetime | None = None,
        *,
        max_retries: int | None = None,
    ) -> str:
        normalized_type = self._normalize_type(job_type)
        if options is not None and not isinstance(options, dict):
            raise ValueError("options must be a mapping")
        effective_max_retries = self._settings.job_default_max_retries if max_retries is None else max_retries
        if effective_max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        now = self._now()
        job = SyncJob(
            id=str(uuid4()),
            type=normalized_type,
            status=SyncJobStatus.PENDING,
            options=dict(options or {}),
            priority=self._settings.job_default_priority if priority is None else int(priority),
            scheduled_for=now if scheduled_for is None else self._coerce_utc(scheduled_for),
            retry_count=0,
            max_retries=effective_max_retries,
            created_at=now,
            updated_at=now,
        )
        self._store.insert(job)
        logger.info(
            "Enqueued sync job",
            extra={"job_id": job.id, "job_type": normalized_type.value, "priority": job.priority},
        )
        return job.id

    def get_job_status(self, job_id: str) -> SyncJobSnapshot:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return self._to_snapshot(job)

    def find_claimable(self, now: datetime | None = None) -> SyncJobSnapshot | None:
        job = self._store.find_claimable(self._now() if now is None else self._coerce_utc(now))
        return None if job is None else self._to_snapshot(job)

    def claim(self, worker_id: str, now: datetime | None = None) -> SyncJobSnapshot | None:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        if normalized_worker_id is None:
            raise ValueError("worker_id cannot be blank")
        effective_now = self._now() if now is None else self._coerce_utc(now)
        job = self._store.claim_next(effective_now, normalized_worker_id)
        if job is None:
            return None
        logger.debug(
            "Claimed sync job",
            extra={"job_id": job.id, "job_type": job.type.value, "worker_id": normalized_worker_id},
        )
        return self._to_snapshot(job)

    def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        *,
        worker_id: str | None = None,
    ) -> SyncJobSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        job = self._load_running(job_id, normalized_worker_id)
        now = self._now()
        return self._apply(
            job,
            SyncJobStatus.COMPLETED,
            {
                "result": dict(result or {}),
                "completed_at": now,
                "error_message": None,
                "updated_at": now,
            },
            normalized_worker_id,
        )

    def fail(
        self,
        job_id: str,
        error: BaseException | str,
        *,
        worker_id: str | None = None,
    ) -> SyncJobSnapshot:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        job = self._load_running(job_id, normalized_worker_id)
        now = self._now()
        message = self._error_text(error)
        next_retry_count = job.retry_count + 1

        if next_retry_count < job.max_retries:
            previous = self._coerce_utc(job.scheduled_for)
            candidate = now + timedelta(seconds=self._backoff.delay(next_retry_count - 1))
            if candidate <= previous:
                candidate = previous + timedelta(seconds=1)
            snapshot = self._apply(
                job,
                SyncJobStatus.PENDING,
                {
                    "retry_count": next_retry_count,
                    "scheduled_for": candidate,
                    "started_at": None,
                    "claimed_by": None,
                    "error_message": message,
                    "updated_at": now,
                },
                normalized_worker_id,
            )
            logger.warning(
                "Sync job failed, rescheduled",
                extra={"job_id": job_id, "retry_count": next_retry_count, "scheduled_for": candidate.isoformat()},
            )
            return snapshot

        snapshot = self._apply(
            job,
            SyncJobStatus.FAILED,
            {
                "retry_count": min(next_retry_count, job.max_retries),
                "completed_at": now,
                "error_message": message,
                "updated_at": now,
            },
            normalized_worker_id,
        )
        logger.error(
            "Sync job failed permanently",
            extra={"job_id": job_id, "retry_count": snapshot.retry_count, "error_message": message},
        )
        return snapshot

    def list_jobs(
        self,
        *,
        limit: int = 50,
        cursor: str | None = None,
        status: SyncJobStatus | None = None,
        job_type: SyncJobType | None = None,
    ) -> JobListResult:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(SyncJob).order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(bounded_limit + 1)
            if status is not None:
                stmt = stmt.where(SyncJob.status == status)
            if job_type is not None:
                stmt = stmt.where(SyncJob.type == job_type)
            if cursor:
                anchor_exists = session.scalar(select(SyncJob.id).where(SyncJob.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(SyncJob.created_at).where(SyncJob.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        SyncJob.created_at < anchor_created_at,
                        and_(SyncJob.created_at == anchor_created_at, SyncJob.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def get_metrics(self) -> QueueMetricsSnapshot:
        now = self._now()
        stale_cutoff = now - timedelta(seconds=self._settings.job_stale_after_seconds)
        with self._session_factory() as session:
            grouped = session.execute(
                select(SyncJob.type, SyncJob.status, func.count()).group_by(SyncJob.type, SyncJob.status)
            ).all()
            eligible_pending = int(
                session.scalar(
                    select(func.count()).where(
                        SyncJob.status == SyncJobStatus.PENDING,
                        SyncJob.scheduled_for <= now,
                    )
                )
                or 0
            )
            oldest_eligible = session.scalar(
                select(func.min(SyncJob.scheduled_for)).where(
                    SyncJob.status == SyncJobStatus.PENDING,
                    SyncJob.scheduled_for <= now,
                )
            )
            stale_running = int(
                session.scalar(
                    select(func.count()).where(
                        SyncJob.status == SyncJobStatus.RUNNING,
                        SyncJob.started_at < stale_cutoff,
                    )
                )
                or 0
            )

        totals = {status: 0 for status in SyncJobStatus}
        by_type: dict[str, dict[str, int]] = {}
        for job_type, status, count in grouped:
            totals[status] += int(count)
            by_type.setdefault(job_type.value, {})[status.value] = int(count)

        oldest_age = None
        if oldest_eligible is not None:
            oldest_age = max((now - self._coerce_utc(oldest_eligible)).total_seconds(), 0.0)

        return QueueMetricsSnapshot(
            generated_at=now,
            pending=totals[SyncJobStatus.PENDING],
            running=totals[SyncJobStatus.RUNNING],
            completed=totals[SyncJobStatus.COMPLETED],
            failed=totals[SyncJobStatus.FAILED],
            eligible_pending=eligible_pending,
            stale_running=stale_running,
            oldest_eligible_age_seconds=oldest_age,
            by_type=by_type,
        )

    def _to_snapshot(self, job: SyncJob) -> SyncJobSnapshot:
        return SyncJobSnapshot(
            id=job.id,
            type=job.type,
            status=job.status,
            options=job.options,
            priority=job.priority,
            scheduled_for=self._coerce_utc(job.scheduled_for),
            claimed_by=job.claimed_by,
            result=job.result,
            error_message=job.error_message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            created_at=self._coerce_utc(job.created_at),
            updated_at=self._coerce_utc(job.updated_at),
            started_at=None if job.started_at is None else self._coerce_utc(job.started_at),
            completed_at=None if job.completed_at is None else self._coerce_utc(job.completed_at),
        )


def snapshot_to_dict(snapshot: SyncJobSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["type"] = snapshot.type.value
    payload["status"] = snapshot.status.value
    return payload


def metrics_snapshot_to_dict(snapshot: QueueMetricsSnapshot) -> dict[str, Any]:
    return asdict(snapshot)
