from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from judgesync.db.models import SyncJobStatus, SyncJobType


@dataclass(slots=True)
class SyncJobSnapshot:
    id: str
    type: SyncJobType
    status: SyncJobStatus
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


@dataclass(slots=True)
class QueueMetricsSnapshot:
    generated_at: datetime
    pending: int
    running: int
    completed: int
    failed: int
    eligible_pending: int
    stale_running: int
    oldest_eligible_age_seconds: float | None
    by_type: dict[str, dict[str, int]] = field(default_factory=dict)
