from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from judgesync.core.config import Settings
from judgesync.db.models import ApiRateLimit

logger = logging.getLogger(__name__)


class RateLimitExceeded(RuntimeError):
    def __init__(self, message: str, *, retry_after_seconds: float):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


@dataclass(slots=True)
class RateLimiterSnapshot:
    mode: str
    capacity: int
    rate_per_second: float
    tokens: float
    utilization: float
    granted: int
    rejected: int


class RateLimiter(Protocol):
    def acquire(self, cost: int = 1) -> None: ...

    def snapshot(self) -> RateLimiterSnapshot: ...


def _refill(tokens: float, capacity: int, rate: float, elapsed: float) -> float:
    if elapsed <= 0:
        return tokens
    return min(float(capacity), tokens + elapsed * rate)


class TokenBucketRateLimiter:
    """Process-local token bucket shared by every caller of one external API.

    Deduction happens under a lock; waiting happens outside it so one blocked
    caller never stalls the others' refill checks.
    """

    def __init__(
        self,
        *,
        capacity: int,
        rate_per_second: float,
        block: bool = True,
        max_wait_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        self._capacity = capacity
        self._rate = rate_per_second
        self._block = block
        self._max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._granted = 0
        self._rejected = 0

    def _try_take(self, cost: int) -> float:
        """Deduct ``cost`` tokens or return the seconds until they will exist."""
        with self._lock:
            now = self._clock()
            self._tokens = _refill(self._tokens, self._capacity, self._rate, now - self._last_refill)
            self._last_refill = now
            if self._tokens >= cost:
                self._tokens -= cost
                self._granted += 1
                return 0.0
            return (cost - self._tokens) / self._rate

    def acquire(self, cost: int = 1) -> None:
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if cost > self._capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self._capacity}")

        deadline = self._clock() + self._max_wait_seconds
        while True:
            wait_seconds = self._try_take(cost)
            if wait_seconds == 0.0:
                return
            remaining = deadline - self._clock()
            if not self._block or wait_seconds > remaining:
                with self._lock:
                    self._rejected += 1
                raise RateLimitExceeded(
                    f"Rate limit exceeded: {cost} token(s) unavailable", retry_after_seconds=wait_seconds
                )
            self._sleep(wait_seconds)

    def snapshot(self) -> RateLimiterSnapshot:
        with self._lock:
            now = self._clock()
            tokens = _refill(self._tokens, self._capacity, self._rate, now - self._last_refill)
            return RateLimiterSnapshot(
                mode="local",
                capacity=self._capacity,
                rate_per_second=self._rate,
                tokens=tokens,
                utilization=1.0 - (tokens / self._capacity),
                granted=self._granted,
                rejected=self._rejected,
            )


class SharedTokenBucketRateLimiter:
    """Token bucket stored in ``api_rate_limits`` for one budget across processes.

    Each acquisition reads the bucket row, computes the refill, and writes the
    new token count guarded by the ``(tokens, updated_at_ms)`` pair it read.
    Losing that compare-and-swap means another process spent tokens first; the
    read is simply retried.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        bucket_key: str,
        capacity: int,
        rate_per_second: float,
        block: bool = True,
        max_wait_seconds: float = 300.0,
        max_cas_attempts: int = 20,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        self._session_factory = session_factory
        self._bucket_key = bucket_key
        self._capacity = capacity
        self._rate = rate_per_second
        self._block = block
        self._max_wait_seconds = max_wait_seconds
        self._max_cas_attempts = max_cas_attempts
        self._clock = clock
        self._sleep = sleep
        self._counter_lock = threading.Lock()
        self._granted = 0
        self._rejected = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _ensure_bucket(self, session: Session) -> None:
        values = {"bucket_key": self._bucket_key, "tokens": float(self._capacity), "updated_at_ms": self._now_ms()}
        dialect_name = session.get_bind().dialect.name
        if dialect_name == "sqlite":
            stmt = sqlite_insert(ApiRateLimit).values(**values).on_conflict_do_nothing(index_elements=["bucket_key"])
        elif dialect_name == "postgresql":
            stmt = postgresql_insert(ApiRateLimit).values(**values).on_conflict_do_nothing(index_elements=["bucket_key"])
        else:
            if session.get(ApiRateLimit, self._bucket_key) is not None:
                return
            session.add(ApiRateLimit(**values))
            session.commit()
            return
        session.execute(stmt)
        session.commit()

    def _try_take(self, cost: int) -> float:
        with self._session_factory() as session:
            for _ in range(self._max_cas_attempts):
                row = session.execute(
                    select(ApiRateLimit.tokens, ApiRateLimit.updated_at_ms).where(
                        ApiRateLimit.bucket_key == self._bucket_key
                    )
                ).first()
                session.rollback()
                if row is None:
                    self._ensure_bucket(session)
                    continue

                stored_tokens, stored_at_ms = float(row[0]), int(row[1])
                now_ms = max(self._now_ms(), stored_at_ms)
                tokens = _refill(stored_tokens, self._capacity, self._rate, (now_ms - stored_at_ms) / 1000.0)
                if tokens < cost:
                    return (cost - tokens) / self._rate

                result = session.execute(
                    update(ApiRateLimit)
                    .where(
                        ApiRateLimit.bucket_key == self._bucket_key,
                        ApiRateLimit.updated_at_ms == stored_at_ms,
                        ApiRateLimit.tokens == stored_tokens,
                    )
                    .values(tokens=tokens - cost, updated_at_ms=now_ms)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.commit()
                    with self._counter_lock:
                        self._granted += 1
                    return 0.0
                session.rollback()
        logger.warning("Shared rate limiter contention exhausted CAS attempts", extra={"bucket_key": self._bucket_key})
        return 1.0 / self._rate

    def acquire(self, cost: int = 1) -> None:
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if cost > self._capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self._capacity}")

        deadline = self._clock() + self._max_wait_seconds
        while True:
            wait_seconds = self._try_take(cost)
            if wait_seconds == 0.0:
                return
            remaining = deadline - self._clock()
            if not self._block or wait_seconds > remaining:
                with self._counter_lock:
                    self._rejected += 1
                raise RateLimitExceeded(
                    f"Shared rate limit exceeded for {self._bucket_key}", retry_after_seconds=wait_seconds
                )
            self._sleep(wait_seconds)

    def snapshot(self) -> RateLimiterSnapshot:
        with self._session_factory() as session:
            row = session.get(ApiRateLimit, self._bucket_key)
            if row is None:
                tokens = float(self._capacity)
            else:
                elapsed = max(self._now_ms() - int(row.updated_at_ms), 0) / 1000.0
                tokens = _refill(float(row.tokens), self._capacity, self._rate, elapsed)
        with self._counter_lock:
            granted, rejected = self._granted, self._rejected
        return RateLimiterSnapshot(
            mode="shared",
            capacity=self._capacity,
            rate_per_second=self._rate,
            tokens=tokens,
            utilization=1.0 - (tokens / self._capacity),
            granted=granted,
            rejected=rejected,
        )


def build_rate_limiter(
    settings: Settings,
    session_factory: sessionmaker[Session] | None = None,
) -> TokenBucketRateLimiter | SharedTokenBucketRateLimiter:
    if settings.rate_limit_mode == "shared":
        if session_factory is None:
            raise ValueError("Shared rate limit mode requires a session factory")
        return SharedTokenBucketRateLimiter(
            session_factory,
            bucket_key=settings.rate_limit_bucket_key,
            capacity=settings.effective_rate_limit_capacity,
            rate_per_second=settings.effective_rate_limit_per_second,
            block=settings.rate_limit_block,
            max_wait_seconds=settings.rate_limit_max_wait_seconds,
        )
    return TokenBucketRateLimiter(
        capacity=settings.effective_rate_limit_capacity,
        rate_per_second=settings.effective_rate_limit_per_second,
        block=settings.rate_limit_block,
        max_wait_seconds=settings.rate_limit_max_wait_seconds,
    )
