from __future__ import annotations

import argparse
import signal
import threading

from judgesync.core.config import get_settings
from judgesync.core.logging import configure_logging
from judgesync.db.init_db import initialize_database
from judgesync.db.session import dispose_engine
from judgesync.worker.loop import WorkerOutcome
from judgesync.worker.pipeline import build_default_worker, schedule_weekly_sync


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the JudgeSync background sync worker")
    parser.add_argument("--worker-id", default=None, help="Worker identity recorded on claimed jobs")
    parser.add_argument("--once", action="store_true", help="Process at most one job and exit")
    parser.add_argument("--schedule-weekly", action="store_true", help="Queue the weekly sync batch before starting")
    parser.add_argument("--log-level", default=None, help="Override JUDGESYNC_LOG_LEVEL")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    initialize_database()

    if args.schedule_weekly:
        job_ids = schedule_weekly_sync()
        print(f"scheduled_jobs={','.join(job_ids)}")

    worker = build_default_worker(worker_id=args.worker_id)
    if args.once:
        outcome = worker.run_once()
        dispose_engine()
        print(f"worker_id={worker.worker_id} outcome={outcome.value}")
        raise SystemExit(0 if outcome != WorkerOutcome.FAILED else 1)

    stop_event = threading.Event()

    def _request_stop(_signum: int, _frame: object) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    stats = worker.run_forever(stop_event)
    dispose_engine()
    print(" ".join(f"{key}={value}" for key, value in stats.to_dict().items()))


if __name__ == "__main__":
    main()
