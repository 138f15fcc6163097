from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from judgesync.db.models import SyncJobType


class EnqueueJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: SyncJobType
    options: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    scheduled_for: datetime | None = None
    max_retries: int | None = Field(default=None, ge=1, le=100)


class WeeklySyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_at: datetime | None = None


class WeeklySyncResponse(BaseModel):
    job_ids: list[str]


class JobListResponse(BaseModel):
    items: list["JobResponse"]
    next_cursor: str | None


class JobResponse(BaseModel):
    id: str
    type: str
    status: str
    options: dict[str, Any]
    priority: int
    scheduled_for: datetime
    claimed_by: str | None
    result: dict[str, Any] | None
    error_message: str | None
    retry_count: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class QueueMetricsResponse(BaseModel):
    generated_at: datetime
    pending: int
    running: int
    completed: int
    failed: int
    eligible_pending: int
    stale_running: int
    oldest_eligible_age_seconds: float | None
    by_type: dict[str, dict[str, int]]
