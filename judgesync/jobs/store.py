from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import ColumnElement, Select, and_, select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from judgesync.db.models import SyncJob, SyncJobStatus

logger = logging.getLogger(__name__)

SKIP_LOCKED_DIALECTS = {"postgresql", "mysql", "mariadb"}


class JobStoreUnavailableError(RuntimeError):
    pass


class JobStore:
    """Persistence adapter for ``sync_jobs`` with an atomic claim primitive.

    Two claim strategies are available. ``skip_locked`` takes a row lock with
    ``FOR UPDATE SKIP LOCKED`` so concurrent claimants pass over rows another
    transaction is already claiming. ``compare_and_swap`` works on any backend:
    it reads a short list of eligible ids and flips them one at a time with an
    ``UPDATE ... WHERE status = 'pending'``; the affected row count decides who
    won. ``auto`` picks ``skip_locked`` when the dialect supports it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        claim_strategy: str = "auto",
        candidate_batch: int = 5,
        max_rounds: int = 3,
    ):
        if claim_strategy not in {"auto", "skip_locked", "compare_and_swap"}:
            raise ValueError(f"Unknown claim strategy: {claim_strategy}")
        if candidate_batch < 1:
            raise ValueError("candidate_batch must be >= 1")
        if max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")
        self._session_factory = session_factory
        self._claim_strategy = claim_strategy
        self._candidate_batch = candidate_batch
        self._max_rounds = max_rounds
        self._resolved_strategy: str | None = None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except OperationalError as exc:
            raise JobStoreUnavailableError(f"Job store unavailable: {exc.orig}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise JobStoreUnavailableError(f"Job store connection lost: {exc.orig}") from exc
            raise

    def resolve_claim_strategy(self) -> str:
        if self._claim_strategy != "auto":
            return self._claim_strategy
        if self._resolved_strategy is None:
            with self._session_factory() as session:
                dialect_name = session.get_bind().dialect.name
            self._resolved_strategy = "skip_locked" if dialect_name in SKIP_LOCKED_DIALECTS else "compare_and_swap"
        return self._resolved_strategy

    def _claimable(self, now: datetime) -> ColumnElement[bool]:
        return and_(SyncJob.status == SyncJobStatus.PENDING, SyncJob.scheduled_for <= now)

    def _claim_order(self) -> tuple[Any, ...]:
        return (SyncJob.priority.desc(), SyncJob.created_at.asc(), SyncJob.id.asc())

    def insert(self, job: SyncJob) -> SyncJob:
        with self._session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def get(self, job_id: str) -> SyncJob | None:
        with self._session() as session:
            return session.get(SyncJob, job_id)

    def find_claimable(self, now: datetime) -> SyncJob | None:
        with self._session() as session:
            return session.scalars(
                select(SyncJob).where(self._claimable(now)).order_by(*self._claim_order()).limit(1)
            ).first()

    def claim_next(self, now: datetime, worker_id: str) -> SyncJob | None:
        if self.resolve_claim_strategy() == "skip_locked":
            return self._claim_skip_locked(now, worker_id)
        return self._claim_compare_and_swap(now, worker_id)

    def _claim_values(self, now: datetime, worker_id: str) -> dict[str, Any]:
        return {
            "status": SyncJobStatus.RUNNING,
            "started_at": now,
            "claimed_by": worker_id,
            "updated_at": now,
        }

    def skip_locked_candidate_query(self, now: datetime) -> Select[tuple[str]]:
        return (
            select(SyncJob.id)
            .where(self._claimable(now))
            .order_by(*self._claim_order())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

    def _claim_skip_locked(self, now: datetime, worker_id: str) -> SyncJob | None:
        with self._session() as session:
            candidate_id = session.scalar(self.skip_locked_candidate_query(now))
            if candidate_id is None:
                session.rollback()
                return None
            session.execute(
                update(SyncJob)
                .where(SyncJob.id == candidate_id)
                .values(**self._claim_values(now, worker_id))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return session.get(SyncJob, candidate_id)

    def _claim_compare_and_swap(self, now: datetime, worker_id: str) -> SyncJob | None:
        with self._session() as session:
            for round_number in range(self._max_rounds):
                candidate_ids = list(
                    session.scalars(
                        select(SyncJob.id)
                        .where(self._claimable(now))
                        .order_by(*self._claim_order())
                        .limit(self._candidate_batch)
                    ).all()
                )
                session.rollback()
                if not candidate_ids:
                    return None

                for candidate_id in candidate_ids:
                    result = session.execute(
                        update(SyncJob)
                        .where(SyncJob.id == candidate_id, self._claimable(now))
                        .values(**self._claim_values(now, worker_id))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        session.commit()
                        return session.get(SyncJob, candidate_id)
                    session.rollback()

                logger.debug(
                    "Lost every claim race in round, rescanning",
                    extra={"worker_id": worker_id, "round": round_number + 1, "candidates": len(candidate_ids)},
                )
        return None

    def transition(
        self,
        job_id: str,
        *,
        expected_status: SyncJobStatus,
        values: dict[str, Any],
        owner: str | None = None,
    ) -> bool:
        stmt = update(SyncJob).where(SyncJob.id == job_id, SyncJob.status == expected_status)
        if owner is not None:
            stmt = stmt.where(SyncJob.claimed_by == owner)
        with self._session() as session:
            result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True
