from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from judgesync.external.circuit_breaker import CircuitBreakerSnapshot
from judgesync.external.rate_limiter import RateLimiterSnapshot


class ExternalApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientApiError(ExternalApiError):
    def __init__(self, message: str, *, status_code: int | None = None, retry_after_seconds: float | None = None):
        super().__init__(message, status_code=status_code)
        self.retry_after_seconds = retry_after_seconds


class PermanentApiError(ExternalApiError):
    pass


@dataclass(slots=True)
class Page:
    """One page of a paginated list endpoint.

    ``cursor`` is what was passed to fetch this page (``None`` for the first
    page) and ``next_cursor`` is the absolute ``next`` URL, so a sync can be
    resumed from any page it has already seen.
    """

    results: list[dict[str, Any]]
    count: int | None
    next_cursor: str | None
    cursor: str | None = None


@dataclass(slots=True)
class ClientMetricsSnapshot:
    requests: int
    retries: int
    transient_failures: int
    permanent_failures: int
    circuit_rejections: int
    circuit: CircuitBreakerSnapshot
    rate_limiter: RateLimiterSnapshot
    by_endpoint: dict[str, int] = field(default_factory=dict)
