from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from judgesync.api.schemas.jobs import EnqueueJobRequest, JobListResponse, JobResponse, QueueMetricsResponse
from judgesync.core.config import get_settings
from judgesync.db.models import SyncJobStatus, SyncJobType
from judgesync.db.session import get_session_factory
from judgesync.jobs.service import (
    JobNotFoundError,
    QueueManager,
    metrics_snapshot_to_dict,
    snapshot_to_dict,
)
from judgesync.jobs.store import JobStoreUnavailableError

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_queue_manager() -> QueueManager:
    return QueueManager(settings=get_settings(), session_factory=get_session_factory())


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def enqueue_job(request: EnqueueJobRequest, queue: QueueManager = Depends(get_queue_manager)) -> JobResponse:
    try:
        job_id = queue.enqueue(
            request.type,
            options=request.options,
            priority=request.priority,
            scheduled_for=request.scheduled_for,
            max_retries=request.max_retries,
        )
        job = queue.get_job_status(job_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    job_status: SyncJobStatus | None = Query(default=None, alias="status"),
    job_type: SyncJobType | None = Query(default=None, alias="type"),
    queue: QueueManager = Depends(get_queue_manager),
) -> JobListResponse:
    try:
        result = queue.list_jobs(limit=limit, cursor=cursor, status=job_status, job_type=job_type)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/metrics", response_model=QueueMetricsResponse)
def get_queue_metrics(queue: QueueManager = Depends(get_queue_manager)) -> QueueMetricsResponse:
    try:
        metrics = queue.get_metrics()
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueMetricsResponse.model_validate(metrics_snapshot_to_dict(metrics))


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, queue: QueueManager = Depends(get_queue_manager)) -> JobResponse:
    try:
        job = queue.get_job_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))
