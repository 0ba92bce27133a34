"""
Backend REST Client
===================

``requests``-based client for the hosted REST backend (PostgREST-style
endpoints behind an API gateway).  Every request carries the gateway key,
is retried on transient statuses and transport errors, and is refused
outright while the circuit breaker considers the backend down.

Retries are safe for every method the sync layer sends because its writes
are upserts and absolute PATCHes.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger("ambusync.clients")


class CircuitOpenError(Exception):
    """The backend circuit is open; the request was not sent."""


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a backend that keeps failing.

    After ``failure_threshold`` consecutive failures the circuit opens and
    requests are refused.  Once ``reset_after`` seconds have passed it lets
    trial requests through (half-open): a success closes it, a failure opens
    it for another ``reset_after`` seconds.
    """

    def __init__(
        self,
        name: str = "backend",
        failure_threshold: int = 5,
        reset_after: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: Optional[float] = None

    def _current(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.reset_after:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current()

    def allow_request(self) -> bool:
        with self._lock:
            return self._current() != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                logger.info("Circuit for %s closed", self.name)
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            state = self._current()
            if state == CircuitState.HALF_OPEN:
                self._opened_at = self._clock()
                logger.warning("Circuit for %s re-opened after a failed trial", self.name)
            elif state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit for %s opened after %d consecutive failures",
                    self.name, self._failures,
                )

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry one request.

    ``attempts`` counts the first try, so ``attempts=1`` disables retries.
    A numeric ``Retry-After`` header on the failed response replaces the
    computed delay, still bounded by ``max_delay``.
    """
    attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    retry_statuses: FrozenSet[int] = frozenset({408, 425, 429, 500, 502, 503, 504})

    def should_retry(self, response: requests.Response) -> bool:
        return response.status_code in self.retry_statuses

    def delay(self, attempt: int, response: Optional[requests.Response] = None) -> float:
        """Pause before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
        if response is not None:
            retry_after = (response.headers or {}).get("Retry-After")
            if retry_after is not None:
                try:
                    return min(self.max_delay, max(0.0, float(retry_after)))
                except (TypeError, ValueError):
                    logger.debug("Ignoring unparseable Retry-After %r", retry_after)
        return min(self.max_delay, self.base_delay * self.multiplier ** attempt)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class HttpClient:
    """Keyed, retrying, circuit-guarded client for one backend.

    Parameters
    ----------
    base_url : str
        REST root, e.g. ``https://<project>.example/rest/v1``.
    api_key : str, optional
        Gateway key, sent both as ``apikey`` and as a bearer token.
    timeout : float
        Per-request timeout in seconds.
    retry : RetryPolicy, optional
    breaker : CircuitBreaker, optional
    session : requests.Session, optional
        Injected session; by default one with a small connection pool and
        urllib3 retries disabled.
    sleep : callable
        Used between retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        retry: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self._api_key = api_key
        self._session = session if session is not None else self._new_session()
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: Any, **kwargs: Any) -> "HttpClient":
        """Client for the ``backend`` config section."""
        kwargs.setdefault("api_key", cfg.get("backend.api_key") or None)
        kwargs.setdefault("timeout", float(cfg.get("backend.timeout_seconds", 10.0)))
        return cls(cfg.get("backend.base_url"), **kwargs)

    @staticmethod
    def _new_session() -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=2, pool_maxsize=8, max_retries=0)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(extra or {})
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> requests.Response:
        """Send one request, retrying transient failures.

        Non-retryable responses (including 4xx) are returned as they are;
        the caller decides what a status means.

        Raises
        ------
        CircuitOpenError
            The breaker refused the request.
        requests.RequestException
            The last transport error, or an ``HTTPError`` wrapping the last
            retryable response, once all attempts are used.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        sent_headers = self._headers(headers)
        last_error: Optional[requests.RequestException] = None

        for attempt in range(max(1, self.retry.attempts)):
            if attempt:
                response = getattr(last_error, "response", None)
                self._sleep(self.retry.delay(attempt - 1, response))
            if not self.breaker.allow_request():
                raise CircuitOpenError(f"{self.breaker.name} circuit is open")

            try:
                response = self._session.request(
                    method=method.upper(),
                    url=url,
                    params=params,
                    json=json,
                    headers=sent_headers,
                    timeout=timeout or self.timeout,
                )
            except requests.RequestException as exc:
                self.breaker.record_failure()
                last_error = exc
                logger.warning("%s %s failed (try %d): %s", method.upper(), url, attempt + 1, exc)
                continue

            if not self.retry.should_retry(response):
                self.breaker.record_success()
                return response

            self.breaker.record_failure()
            last_error = requests.HTTPError(
                f"{response.status_code} from {method.upper()} {url}", response=response,
            )
            logger.warning(
                "%s %s answered %d (try %d)", method.upper(), url, response.status_code, attempt + 1,
            )

        raise last_error

    def get(self, path: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", path, **kwargs)

    def patch(self, path: str, **kwargs: Any) -> requests.Response:
        return self.request("PATCH", path, **kwargs)

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
