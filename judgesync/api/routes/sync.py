from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from judgesync.api.schemas.jobs import WeeklySyncRequest, WeeklySyncResponse
from judgesync.jobs.store import JobStoreUnavailableError
from judgesync.worker.pipeline import schedule_weekly_sync

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/weekly", response_model=WeeklySyncResponse, status_code=status.HTTP_201_CREATED)
def trigger_weekly_sync(request: WeeklySyncRequest | None = None) -> WeeklySyncResponse:
    try:
        job_ids = schedule_weekly_sync(request.start_at if request is not None else None)
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return WeeklySyncResponse(job_ids=job_ids)
