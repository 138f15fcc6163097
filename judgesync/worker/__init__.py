from judgesync.worker.pipeline import (
    build_default_worker,
    enqueue_sync_job,
    schedule_weekly_sync,
)

__all__ = [
    "enqueue_sync_job",
    "schedule_weekly_sync",
    "build_default_worker",
]
