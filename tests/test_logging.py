from __future__ import annotations

import logging

from judgesync.core.logging import LOG_DATE_FORMAT, LOG_FORMAT, ContextFormatter


def make_record(extra: dict[str, object] | None = None) -> logging.LogRecord:
    return logging.getLogger("judgesync.jobs.service").makeRecord(
        "judgesync.jobs.service",
        logging.WARNING,
        __file__,
        10,
        "Sync job failed, rescheduled",
        (),
        None,
        extra=extra,
    )


def test_extra_fields_are_rendered_after_the_message() -> None:
    formatter = ContextFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    line = formatter.format(make_record({"job_id": "abc", "retry_count": 2, "delay_seconds": 1.5}))
    assert "| WARNING | judgesync.jobs.service | Sync job failed, rescheduled | " in line
    assert line.endswith("delay_seconds=1.5 job_id=abc retry_count=2")


def test_records_without_extra_keep_the_plain_format() -> None:
    formatter = ContextFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    line = formatter.format(make_record())
    assert line.endswith("| Sync job failed, rescheduled")
