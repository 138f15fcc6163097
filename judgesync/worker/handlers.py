from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from judgesync.core.config import Settings
from judgesync.db.models import SyncJobType
from judgesync.external.client import CourtListenerClient
from judgesync.external.types import Page
from judgesync.jobs.types import SyncJobSnapshot
from judgesync.records.service import RecordService, UpsertResult

logger = logging.getLogger(__name__)

DEFAULT_DECISION_WINDOW_DAYS = 7
DEFAULT_MAX_DECISIONS = 100


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(slots=True)
class HandlerContext:
    settings: Settings
    client: CourtListenerClient
    records: RecordService
    clock: Callable[[], datetime] = field(default=_utc_now)


SyncHandler = Callable[[SyncJobSnapshot, HandlerContext], dict[str, Any]]


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[SyncJobType, SyncHandler] = {}

    def register(self, job_type: SyncJobType | str, handler: SyncHandler) -> None:
        self._handlers[SyncJobType(job_type)] = handler

    def get(self, job_type: SyncJobType | str) -> SyncHandler | None:
        try:
            return self._handlers.get(SyncJobType(job_type))
        except ValueError:
            return None

    def __contains__(self, job_type: object) -> bool:
        return isinstance(job_type, (SyncJobType, str)) and self.get(job_type) is not None


def _optional_int(options: dict[str, Any], name: str, *, minimum: int = 1) -> int | None:
    raw = options.get(name)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Option {name} must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Option {name} must be an integer") from exc
    if value < minimum:
        raise ValueError(f"Option {name} must be >= {minimum}")
    return value


def _int_option(options: dict[str, Any], name: str, default: int) -> int:
    value = _optional_int(options, name)
    return default if value is None else value


def _str_option(options: dict[str, Any], name: str) -> str | None:
    raw = options.get(name)
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


@dataclass(slots=True)
class _SyncProgress:
    pages: int = 0
    fetched: int = 0
    upserts: UpsertResult = field(default_factory=UpsertResult)
    last_cursor: str | None = None

    def record(self, page: Page, result: UpsertResult, fetched: int) -> None:
        self.pages += 1
        self.fetched += fetched
        self.upserts.merge(result)
        self.last_cursor = page.next_cursor

    def to_dict(self) -> dict[str, Any]:
        return {
            "pages": self.pages,
            "fetched": self.fetched,
            **self.upserts.to_dict(),
            "next_cursor": self.last_cursor,
        }


def sync_courts(job: SyncJobSnapshot, context: HandlerContext) -> dict[str, Any]:
    options = job.options or {}
    jurisdiction = _str_option(options, "jurisdiction")
    batch_size = _int_option(options, "batch_size", context.settings.default_page_size)
    max_pages = _optional_int(options, "max_pages")
    client = context.client

    progress = _SyncProgress()
    pages = client.iter_pages(
        lambda cursor: client.list_courts(jurisdiction=jurisdiction, page_size=batch_size, cursor=cursor),
        cursor=_str_option(options, "cursor"),
    )
    for page in pages:
        progress.record(page, context.records.upsert_courts(page.results), len(page.results))
        if max_pages is not None and progress.pages >= max_pages:
            break

    logger.info("Court sync finished", extra={"job_id": job.id, "jurisdiction": jurisdiction, **progress.upserts.to_dict()})
    return {"jurisdiction": jurisdiction, **progress.to_dict()}


def sync_judges(job: SyncJobSnapshot, context: HandlerContext) -> dict[str, Any]:
    options = job.options or {}
    jurisdiction = _str_option(options, "jurisdiction")
    batch_size = _int_option(options, "batch_size", context.settings.default_page_size)
    max_pages = _optional_int(options, "max_pages")
    discover_limit = _optional_int(options, "discover_limit")
    client = context.client

    progress = _SyncProgress()
    pages = client.iter_pages(
        lambda cursor: client.list_judges(jurisdiction=jurisdiction, page_size=batch_size, cursor=cursor),
        cursor=_str_option(options, "cursor"),
    )
    for page in pages:
        results = page.results
        if discover_limit is not None:
            results = results[: max(discover_limit - progress.fetched, 0)]
        progress.record(page, context.records.upsert_judges(results, jurisdiction=jurisdiction), len(results))
        if discover_limit is not None and progress.fetched >= discover_limit:
            break
        if max_pages is not None and progress.pages >= max_pages:
            break

    logger.info("Judge sync finished", extra={"job_id": job.id, "jurisdiction": jurisdiction, **progress.upserts.to_dict()})
    return {"jurisdiction": jurisdiction, **progress.to_dict()}


def sync_decisions(job: SyncJobSnapshot, context: HandlerContext) -> dict[str, Any]:
    options = job.options or {}
    court = _str_option(options, "court")
    days_since_last = _int_option(options, "days_since_last", DEFAULT_DECISION_WINDOW_DAYS)
    batch_size = _int_option(options, "batch_size", context.settings.default_page_size)
    max_decisions = _int_option(options, "max_decisions", DEFAULT_MAX_DECISIONS)
    filed_after = (context.clock() - timedelta(days=days_since_last)).date()
    client = context.client

    progress = _SyncProgress()
    pages = client.iter_pages(
        lambda cursor: client.list_clusters(court=court, filed_after=filed_after, page_size=batch_size, cursor=cursor),
        cursor=_str_option(options, "cursor"),
    )
    for page in pages:
        results = page.results[: max(max_decisions - progress.fetched, 0)]
        progress.record(page, context.records.upsert_decisions(results, court=court), len(results))
        if progress.fetched >= max_decisions:
            break

    logger.info("Decision sync finished", extra={"job_id": job.id, "court": court, **progress.upserts.to_dict()})
    return {
        "court": court,
        "filed_after": filed_after.isoformat(),
        "latest_date_filed": context.records.latest_decision_date(court),
        **progress.to_dict(),
    }


def build_default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(SyncJobType.COURTS, sync_courts)
    registry.register(SyncJobType.JUDGES, sync_judges)
    registry.register(SyncJobType.DECISIONS, sync_decisions)
    return registry
