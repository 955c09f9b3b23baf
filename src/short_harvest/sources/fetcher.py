"""Blocking HTTP access to the regulator portal."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter

from ..deadline import Deadline, check_deadline
from ..errors import FetchError, HarvestCancelled
from ..models import RawDocument

LOGGER = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "accept-language": "es-ES,es;q=0.9,en;q=0.8",
    "cache-control": "max-age=0",
    "sec-fetch-dest": "document",
    "sec-fetch-mode": "navigate",
    "sec-fetch-site": "none",
    "upgrade-insecure-requests": "1",
    "user-agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36",
}

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
# Transport failures, including a connection dropped while the body was read.
TRANSIENT_ERRORS = (
    requests.Timeout,
    requests.ConnectionError,
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
)


class RequestThrottle:
    """Process wide permit pool shared by every issuer pipeline.

    At most ``max_concurrent`` requests are in flight and consecutive request starts
    are spaced by ``min_interval`` seconds. Callers queue for a permit.
    """

    def __init__(
        self,
        max_concurrent: int = 2,
        min_interval: float = 0.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._permits = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._min_interval = min_interval
        self._next_start = 0.0
        self._clock = clock
        self._sleep = sleep

    def acquire(self, deadline: Optional[Deadline] = None) -> None:
        timeout = None if deadline is None else deadline.remaining()
        if not self._permits.acquire(timeout=timeout):
            raise HarvestCancelled("Deadline expired while waiting for a request permit")
        with self._lock:
            now = self._clock()
            wait = self._next_start - now
            self._next_start = max(now, self._next_start) + self._min_interval
        if wait > 0:
            self._sleep(wait)

    def release(self) -> None:
        self._permits.release()


class HtmlFetcher:
    """Fetch raw portal pages with bounded retries and exponential backoff."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_factor: float = 1.0,
        backoff_max: float = 30.0,
        throttle: RequestThrottle | None = None,
        session: requests.Session | None = None,
        pool_size: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self.throttle = throttle or RequestThrottle()
        self._sleep = sleep
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        if self._owns_session:
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "HtmlFetcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def fetch(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        *,
        method: str = "GET",
        deadline: Optional[Deadline] = None,
    ) -> RawDocument:
        """Return the body of ``url`` or raise :class:`FetchError`.

        Timeouts, connection failures and resets, 5xx and 429 answers are retried up to
        ``max_attempts`` times. Any other 4xx is surfaced at once.
        """

        last_cause = "no attempt made"
        last_status: Optional[int] = None
        for attempt in range(1, self.max_attempts + 1):
            check_deadline(deadline, f"fetching {url}")
            retry_after: Optional[float] = None
            try:
                response = self._send(method, url, params, deadline)
            except TRANSIENT_ERRORS as exc:
                last_cause = f"{type(exc).__name__}: {exc}"
                last_status = None
                LOGGER.warning("Attempt %d/%d for %s failed: %s", attempt, self.max_attempts, url, last_cause)
            except requests.RequestException as exc:
                raise FetchError(f"{type(exc).__name__}: {exc}", attempt, retryable=False) from exc
            else:
                status = response.status_code
                if status < 400:
                    LOGGER.debug("Fetched %s (%d) on attempt %d", response.url, status, attempt)
                    return RawDocument(url=response.url, status_code=status, text=response.text)
                last_status = status
                last_cause = f"HTTP {status} {response.reason or ''}".strip()
                if status not in RETRYABLE_STATUS:
                    LOGGER.error("Non-retryable answer from %s: %s", url, last_cause)
                    raise FetchError(last_cause, attempt, status_code=status, retryable=False)
                retry_after = _retry_after(response)
                LOGGER.warning("Attempt %d/%d for %s failed: %s", attempt, self.max_attempts, url, last_cause)

            if attempt < self.max_attempts:
                self._backoff(attempt, retry_after, deadline)

        LOGGER.error("Giving up on %s after %d attempts: %s", url, self.max_attempts, last_cause)
        raise FetchError(last_cause, self.max_attempts, status_code=last_status)

    def _send(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any] | None,
        deadline: Optional[Deadline],
    ) -> requests.Response:
        timeout = self.timeout if deadline is None else deadline.clip(self.timeout)
        self.throttle.acquire(deadline)
        try:
            if method.upper() == "POST":
                return self.session.post(url, data=params, timeout=timeout)
            return self.session.get(url, params=params, timeout=timeout)
        finally:
            self.throttle.release()

    def _backoff(self, attempt: int, retry_after: Optional[float], deadline: Optional[Deadline]) -> None:
        delay = self.backoff_factor * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = retry_after
        delay = min(delay, self.backoff_max)
        if deadline is not None and deadline.remaining() <= delay:
            raise HarvestCancelled(f"Deadline expires before retry attempt {attempt + 1}")
        if delay > 0:
            LOGGER.debug("Backing off %.2fs before attempt %d", delay, attempt + 1)
            self._sleep(delay)


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


__all__ = ["HtmlFetcher", "RequestThrottle", "DEFAULT_HEADERS"]
