from __future__ import annotations

import logging
import random
import threading
import time
from collections import Counter
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterator

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from judgesync.core.backoff import BackoffPolicy
from judgesync.core.config import Settings
from judgesync.external.circuit_breaker import CircuitBreaker, CircuitOpenError
from judgesync.external.rate_limiter import RateLimiter, RateLimitExceeded, build_rate_limiter
from judgesync.external.types import (
    ClientMetricsSnapshot,
    Page,
    PermanentApiError,
    TransientApiError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def is_transient_failure(exc: BaseException) -> bool:
    return isinstance(exc, TransientApiError)


def never_reached_api(exc: BaseException) -> bool:
    return isinstance(exc, RateLimitExceeded)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Return the wait demanded by a ``Retry-After`` header in seconds.

    Accepts delta-seconds and HTTP-date forms; anything unparsable is ignored.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(tz=timezone.utc)
    return max((retry_at - reference).total_seconds(), 0.0)


class CourtListenerClient:
    """Client for the CourtListener REST API.

    Every HTTP attempt runs inside the circuit breaker and spends one token
    from the rate limiter. Transient failures (429, 5xx, transport errors) are
    retried with exponential backoff; a 429 stretches the delay and a
    ``Retry-After`` header sets its floor. Other 4xx responses and malformed
    bodies raise :class:`PermanentApiError` immediately.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        limiter: RateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        http_client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        token = (settings.courtlistener_api_token or "").strip()
        if not token:
            raise ValueError("JUDGESYNC_COURTLISTENER_API_TOKEN is required to call the CourtListener API")

        self._settings = settings
        self._token = token
        self._max_attempts = settings.api_max_attempts
        self._rate_limit_multiplier = settings.api_rate_limit_backoff_multiplier
        self._backoff = BackoffPolicy(
            base_seconds=settings.api_retry_base_seconds,
            max_seconds=settings.api_retry_max_seconds,
            jitter_ratio=settings.api_retry_jitter_ratio,
            rng=rng or random.Random(),
        )
        self._limiter = limiter or build_rate_limiter(settings)
        self._breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            window_seconds=settings.circuit_window_seconds,
            cooldown_seconds=settings.circuit_cooldown_seconds,
            name="courtlistener",
            is_failure=is_transient_failure,
            is_inconclusive=never_reached_api,
        )
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(
            base_url=settings.courtlistener_base_url,
            timeout=settings.api_request_timeout_seconds,
            transport=transport,
        )
        self._sleep = sleep

        self._metrics_lock = threading.Lock()
        self._requests = 0
        self._retries = 0
        self._transient_failures = 0
        self._permanent_failures = 0
        self._circuit_rejections = 0
        self._by_endpoint: Counter[str] = Counter()

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def __enter__(self) -> "CourtListenerClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self._token}",
            "User-Agent": self._settings.courtlistener_user_agent,
            "Accept": "application/json",
        }

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._metrics_lock:
            setattr(self, name, getattr(self, name) + amount)

    def _send_once(self, url: str, params: dict[str, Any], endpoint: str) -> dict[str, Any]:
        self._limiter.acquire()
        with self._metrics_lock:
            self._requests += 1
            self._by_endpoint[endpoint] += 1

        try:
            response = self._http.get(url, params=params, headers=self._headers())
        except httpx.TransportError as exc:
            raise TransientApiError(f"{type(exc).__name__} calling {endpoint}: {exc}") from exc

        status_code = response.status_code
        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            raise TransientApiError(
                f"CourtListener returned {status_code} for {endpoint}",
                status_code=status_code,
                retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status_code >= 400:
            raise PermanentApiError(f"CourtListener returned {status_code} for {endpoint}", status_code=status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentApiError(f"Malformed JSON from {endpoint}", status_code=status_code) from exc
        if not isinstance(payload, dict):
            raise PermanentApiError(f"Unexpected payload shape from {endpoint}", status_code=status_code)
        return payload

    def _attempt(self, url: str, query: dict[str, Any], endpoint: str, allow_404: bool) -> dict[str, Any] | None:
        try:
            return self._breaker.execute(lambda: self._send_once(url, query, endpoint))
        except CircuitOpenError:
            self._bump("_circuit_rejections")
            raise
        except PermanentApiError as exc:
            if allow_404 and exc.status_code == 404:
                return None
            self._bump("_permanent_failures")
            raise
        except TransientApiError:
            self._bump("_transient_failures")
            raise

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        delay = self._backoff.delay(retry_state.attempt_number - 1)
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        if isinstance(exc, TransientApiError):
            if exc.status_code == 429:
                delay *= self._rate_limit_multiplier
            if exc.retry_after_seconds is not None:
                delay = max(delay, exc.retry_after_seconds)
        return delay

    def _before_retry_sleep(self, retry_state: RetryCallState) -> None:
        self._bump("_retries")
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        logger.warning(
            "Transient CourtListener failure, retrying",
            extra={
                "endpoint": retry_state.args[2],
                "attempt": retry_state.attempt_number,
                "status_code": getattr(exc, "status_code", None),
                "delay_seconds": round(delay, 3),
            },
        )

    def _request(self, url: str, params: dict[str, Any] | None = None, *, allow_404: bool = False) -> dict[str, Any] | None:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        query["format"] = "json"
        endpoint = url.split("?", 1)[0]

        retrying = Retrying(
            retry=retry_if_exception_type(TransientApiError),
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            sleep=self._sleep,
            before_sleep=self._before_retry_sleep,
            reraise=True,
        )
        try:
            return retrying(self._attempt, url, query, endpoint, allow_404)
        except TransientApiError as exc:
            logger.error(
                "CourtListener request exhausted retries",
                extra={"endpoint": endpoint, "attempts": self._max_attempts, "status_code": exc.status_code},
            )
            raise

    def _list(self, path: str, params: dict[str, Any], cursor: str | None) -> Page:
        if cursor:
            payload = self._request(cursor)
        else:
            payload = self._request(path, params)
        results = payload.get("results") if payload is not None else None
        if not isinstance(results, list):
            raise PermanentApiError(f"List response from {path} has no results array")
        count = payload.get("count")
        return Page(
            results=results,
            count=count if isinstance(count, int) else None,
            next_cursor=payload.get("next") or None,
            cursor=cursor,
        )

    def _page_size(self, page_size: int | None) -> int:
        if page_size is None:
            return self._settings.default_page_size
        return max(1, min(page_size, self._settings.max_page_size))

    def list_courts(
        self,
        *,
        jurisdiction: str | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
        filters: dict[str, Any] | None = None,
    ) -> Page:
        params = {"jurisdiction": jurisdiction, "page_size": self._page_size(page_size), "ordering": "id"}
        params.update(filters or {})
        return self._list("courts/", params, cursor)

    def list_judges(
        self,
        *,
        court: str | None = None,
        jurisdiction: str | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
        ordering: str = "-date_modified",
        filters: dict[str, Any] | None = None,
    ) -> Page:
        params = {
            "positions__court": court,
            "positions__court__jurisdiction": jurisdiction,
            "page_size": self._page_size(page_size),
            "ordering": ordering,
        }
        params.update(filters or {})
        return self._list("people/", params, cursor)

    def list_clusters(
        self,
        *,
        court: str | None = None,
        filed_after: date | None = None,
        filed_before: date | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
        ordering: str = "-date_filed",
    ) -> Page:
        params = {
            "docket__court": court,
            "date_filed__gte": filed_after.isoformat() if filed_after else None,
            "date_filed__lte": filed_before.isoformat() if filed_before else None,
            "page_size": self._page_size(page_size),
            "ordering": ordering,
        }
        return self._list("clusters/", params, cursor)

    def get_court(self, court_id: str, *, allow_404: bool = False) -> dict[str, Any] | None:
        return self._request(f"courts/{court_id}/", allow_404=allow_404)

    def get_judge(self, person_id: str | int, *, allow_404: bool = False) -> dict[str, Any] | None:
        return self._request(f"people/{person_id}/", allow_404=allow_404)

    def get_cluster(self, cluster_id: str | int, *, allow_404: bool = False) -> dict[str, Any] | None:
        return self._request(f"clusters/{cluster_id}/", allow_404=allow_404)

    def iter_pages(self, fetch: Callable[[str | None], Page], cursor: str | None = None) -> Iterator[Page]:
        """Yield pages lazily, following ``next`` cursors until exhausted."""
        while True:
            page = fetch(cursor)
            yield page
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    def get_metrics(self) -> ClientMetricsSnapshot:
        with self._metrics_lock:
            requests = self._requests
            retries = self._retries
            transient = self._transient_failures
            permanent = self._permanent_failures
            rejections = self._circuit_rejections
            by_endpoint = dict(self._by_endpoint)
        return ClientMetricsSnapshot(
            requests=requests,
            retries=retries,
            transient_failures=transient,
            permanent_failures=permanent,
            circuit_rejections=rejections,
            circuit=self._breaker.snapshot(),
            rate_limiter=self._limiter.snapshot(),
            by_endpoint=by_endpoint,
        )
