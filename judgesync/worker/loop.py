from __future__ import annotations

import logging
import os
import socket
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from judgesync.db.models import SyncJobStatus
from judgesync.jobs.service import InvalidJobStateError, JobNotFoundError, JobOwnershipError, QueueManager
from judgesync.jobs.store import JobStoreUnavailableError
from judgesync.jobs.types import SyncJobSnapshot
from judgesync.worker.handlers import HandlerContext, HandlerRegistry

logger = logging.getLogger(__name__)

QUEUE_STATE_ERRORS = (InvalidJobStateError, JobOwnershipError, JobNotFoundError)


class WorkerOutcome(str, Enum):
    IDLE = "idle"
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"


class MissingHandlerError(LookupError):
    pass


@dataclass(slots=True)
class WorkerStats:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    idle_polls: int = 0
    store_errors: int = 0
    state_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SyncWorker:
    """Claims sync jobs one at a time and reports each outcome to the queue.

    Every handler exception becomes a ``fail`` call; the queue decides between
    retry and terminal failure, and a result the queue cannot record is failed
    the same way. Store outages and lost ownership are not job failures: they
    are raised from ``run_once`` and absorbed by ``run_forever``.
    """

    def __init__(
        self,
        queue: QueueManager,
        registry: HandlerRegistry,
        context: HandlerContext,
        *,
        worker_id: str | None = None,
        poll_seconds: float | None = None,
        store_backoff_seconds: float | None = None,
    ):
        settings = context.settings
        self._queue = queue
        self._registry = registry
        self._context = context
        self._worker_id = (worker_id or settings.worker_id or default_worker_id()).strip()
        self._poll_seconds = poll_seconds if poll_seconds is not None else settings.worker_poll_seconds
        self._store_backoff_seconds = (
            store_backoff_seconds if store_backoff_seconds is not None else settings.worker_store_backoff_seconds
        )
        self._stats = WorkerStats()
        self._stats_lock = threading.Lock()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def stats(self) -> WorkerStats:
        with self._stats_lock:
            return WorkerStats(**self._stats.to_dict())

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)

    def _report_failure(self, job: SyncJobSnapshot, error: BaseException) -> WorkerOutcome:
        snapshot = self._queue.fail(job.id, error, worker_id=self._worker_id)
        if snapshot.status == SyncJobStatus.PENDING:
            self._bump("retried")
            return WorkerOutcome.RETRIED
        self._bump("failed")
        return WorkerOutcome.FAILED

    def run_once(self) -> WorkerOutcome:
        job = self._queue.claim(self._worker_id)
        if job is None:
            self._bump("idle_polls")
            return WorkerOutcome.IDLE

        self._bump("claimed")
        logger.info(
            "Claimed sync job",
            extra={"job_id": job.id, "job_type": job.type.value, "worker_id": self._worker_id, "retry_count": job.retry_count},
        )

        handler = self._registry.get(job.type)
        if handler is None:
            return self._report_failure(job, MissingHandlerError(f"No handler registered for job type {job.type.value}"))

        try:
            result: dict[str, Any] = handler(job, self._context)
        except Exception as exc:
            logger.warning(
                "Sync handler raised",
                extra={"job_id": job.id, "job_type": job.type.value, "error_type": type(exc).__name__},
                exc_info=True,
            )
            return self._report_failure(job, exc)

        try:
            self._queue.complete(job.id, result, worker_id=self._worker_id)
        except (JobStoreUnavailableError, *QUEUE_STATE_ERRORS):
            raise
        except Exception as exc:
            logger.warning(
                "Could not record sync job result",
                extra={"job_id": job.id, "job_type": job.type.value, "error_type": type(exc).__name__},
            )
            return self._report_failure(job, exc)
        self._bump("completed")
        return WorkerOutcome.COMPLETED

    def run_forever(self, stop_event: threading.Event | None = None) -> WorkerStats:
        stop = stop_event or threading.Event()
        logger.info("Sync worker started", extra={"worker_id": self._worker_id})
        while not stop.is_set():
            try:
                outcome = self.run_once()
            except JobStoreUnavailableError as exc:
                self._bump("store_errors")
                logger.warning(
                    "Job store unavailable, backing off",
                    extra={"worker_id": self._worker_id, "error": str(exc), "backoff_seconds": self._store_backoff_seconds},
                )
                stop.wait(self._store_backoff_seconds)
                continue
            except QUEUE_STATE_ERRORS as exc:
                self._bump("state_errors")
                logger.warning(
                    "Sync job changed hands while running, skipping",
                    extra={"worker_id": self._worker_id, "error": str(exc)},
                )
                continue
            if outcome == WorkerOutcome.IDLE:
                stop.wait(self._poll_seconds)
        logger.info("Sync worker stopped", extra={"worker_id": self._worker_id, **self.stats.to_dict()})
        return self.stats
