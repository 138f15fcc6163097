from __future__ import annotations

import threading

from judgesync.external.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


class FakeClock:
    def __init__(self, start: float = 500.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class Boom(RuntimeError):
    pass


class NotCounted(RuntimeError):
    pass


def make_breaker(clock: FakeClock, **overrides: object) -> CircuitBreaker:
    options: dict[str, object] = {
        "failure_threshold": 3,
        "window_seconds": 60.0,
        "cooldown_seconds": 30.0,
        "is_failure": lambda exc: not isinstance(exc, NotCounted),
        "clock": clock,
    }
    options.update(overrides)
    return CircuitBreaker(**options)  # type: ignore[arg-type]


def fail_with(exc: BaseException):  # type: ignore[no-untyped-def]
    def _call() -> None:
        raise exc

    return _call


def trip(breaker: CircuitBreaker, times: int = 3) -> None:
    for _ in range(times):
        try:
            breaker.execute(fail_with(Boom("down")))
        except Boom:
            pass


def test_opens_after_threshold_failures_within_window() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED

    trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.snapshot().trips == 1


def test_failures_outside_window_do_not_accumulate() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker, 2)
    clock.now += 61
    trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().failure_count == 2


def test_success_while_closed_clears_failures() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker, 2)
    assert breaker.execute(lambda: "ok") == "ok"
    trip(breaker, 2)
    assert breaker.state == CircuitState.CLOSED


def test_open_circuit_rejects_without_calling() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)
    calls: list[int] = []

    clock.now += 10
    try:
        breaker.execute(lambda: calls.append(1))
    except CircuitOpenError as exc:
        assert exc.retry_after_seconds == 20.0
    else:
        raise AssertionError("expected CircuitOpenError")
    assert calls == []
    assert breaker.snapshot().rejected == 1


def test_half_open_success_closes_circuit() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)

    clock.now += 30
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.execute(lambda: 42) == 42
    assert breaker.state == CircuitState.CLOSED


def test_half_open_failure_reopens_with_fresh_cooldown() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)

    clock.now += 30
    trip(breaker, 1)
    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.opened_at == clock.now
    assert snapshot.trips == 2


def test_half_open_allows_exactly_one_trial() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)
    clock.now += 30

    entered = threading.Event()
    release = threading.Event()
    outcomes: list[str] = []

    def slow_trial() -> str:
        entered.set()
        release.wait(timeout=2)
        return "trial"

    trial_thread = threading.Thread(target=lambda: outcomes.append(breaker.execute(slow_trial)))
    trial_thread.start()
    assert entered.wait(timeout=2)

    try:
        breaker.execute(lambda: "second")
    except CircuitOpenError:
        outcomes.append("rejected")
    release.set()
    trial_thread.join()

    assert sorted(outcomes) == ["rejected", "trial"]
    assert breaker.state == CircuitState.CLOSED


def test_predicate_excluded_errors_never_trip() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(10):
        try:
            breaker.execute(fail_with(NotCounted("404")))
        except NotCounted:
            pass
    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().failure_count == 0


class NeverSent(RuntimeError):
    pass


def test_inconclusive_trial_frees_the_slot_and_stays_half_open() -> None:
    clock = FakeClock()
    breaker = make_breaker(
        clock,
        is_failure=lambda exc: isinstance(exc, Boom),
        is_inconclusive=lambda exc: isinstance(exc, NeverSent),
    )
    trip(breaker)
    clock.now += 31.0

    try:
        breaker.execute(fail_with(NeverSent("no token")))
    except NeverSent:
        pass
    assert breaker.state == CircuitState.HALF_OPEN

    assert breaker.execute(lambda: "answered") == "answered"
    assert breaker.state == CircuitState.CLOSED


def test_non_counted_trial_error_still_closes() -> None:
    clock = FakeClock()
    breaker = make_breaker(clock)
    trip(breaker)
    clock.now += 31.0
    try:
        breaker.execute(fail_with(NotCounted("404")))
    except NotCounted:
        pass
    assert breaker.state == CircuitState.CLOSED
