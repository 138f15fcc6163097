from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    def __init__(self, message: str, *, retry_after_seconds: float):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


@dataclass(slots=True)
class CircuitBreakerSnapshot:
    name: str
    state: CircuitState
    failure_count: int
    opened_at: float | None
    trips: int
    rejected: int


def _count_everything(exc: BaseException) -> bool:
    return True


def _count_nothing(exc: BaseException) -> bool:
    return False


class CircuitBreaker:
    """Rolling-window circuit breaker around calls to one dependency.

    ``is_failure`` decides which exceptions count toward tripping; exceptions it
    rejects still propagate but leave the failure window untouched. While half
    open exactly one trial call is let through. ``is_inconclusive`` marks
    exceptions raised before the dependency was reached: a trial ending in one
    of them frees the trial slot and leaves the circuit half open.
    """

    def __init__(
        self,
        *,
        failure_threshold: int,
        window_seconds: float,
        cooldown_seconds: float,
        name: str = "default",
        is_failure: Callable[[BaseException], bool] | None = None,
        is_inconclusive: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be > 0")
        self._failure_threshold = failure_threshold
        self._window_seconds = window_seconds
        self._cooldown_seconds = cooldown_seconds
        self._name = name
        self._is_failure = is_failure or _count_everything
        self._is_inconclusive = is_inconclusive or _count_nothing
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._trips = 0
        self._rejected = 0

    def _refresh_state(self, now: float) -> CircuitState:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if now - self._opened_at >= self._cooldown_seconds:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Circuit half-open, allowing one trial call", extra={"circuit": self._name})
        return self._state

    def _prune(self, now: float) -> None:
        horizon = now - self._window_seconds
        while self._failures and self._failures[0] <= horizon:
            self._failures.popleft()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self._failures.clear()
        self._trips += 1
        logger.warning(
            "Circuit opened",
            extra={"circuit": self._name, "cooldown_seconds": self._cooldown_seconds, "trips": self._trips},
        )

    def _close(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit closed", extra={"circuit": self._name})
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._trial_in_flight = False
        self._failures.clear()

    def _reject(self, now: float) -> CircuitOpenError:
        self._rejected += 1
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            retry_after = max(self._cooldown_seconds - (now - self._opened_at), 0.0)
        else:
            retry_after = 0.0
        return CircuitOpenError(f"Circuit {self._name} is {self._state.value}", retry_after_seconds=retry_after)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._refresh_state(self._clock())

    def execute(self, fn: Callable[[], T]) -> T:
        with self._lock:
            now = self._clock()
            state = self._refresh_state(now)
            if state == CircuitState.OPEN:
                raise self._reject(now)
            is_trial = state == CircuitState.HALF_OPEN
            if is_trial:
                if self._trial_in_flight:
                    raise self._reject(now)
                self._trial_in_flight = True

        try:
            result = fn()
        except BaseException as exc:
            self._record_failure(exc, is_trial=is_trial)
            raise
        self._record_success(is_trial=is_trial)
        return result

    def _record_success(self, *, is_trial: bool) -> None:
        with self._lock:
            if is_trial or self._state == CircuitState.CLOSED:
                self._close()

    def _record_failure(self, exc: BaseException, *, is_trial: bool) -> None:
        counted = self._is_failure(exc)
        inconclusive = not counted and self._is_inconclusive(exc)
        with self._lock:
            now = self._clock()
            if is_trial:
                if counted:
                    self._open(now)
                elif inconclusive:
                    self._trial_in_flight = False
                else:
                    self._close()
                return
            if not counted or self._state != CircuitState.CLOSED:
                return
            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self._failure_threshold:
                self._open(now)

    def reset(self) -> None:
        with self._lock:
            self._close()

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            now = self._clock()
            state = self._refresh_state(now)
            self._prune(now)
            return CircuitBreakerSnapshot(
                name=self._name,
                state=state,
                failure_count=len(self._failures),
                opened_at=self._opened_at,
                trips=self._trips,
                rejected=self._rejected,
            )
