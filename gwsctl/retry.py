"""
RequestExecutor — runs googleapiclient requests with retries and a circuit breaker.

Transient failures (429, 5xx) are retried with exponential backoff, honouring
Retry-After when Google sends one. Once the retries are used up the
HttpError is converted into the gwsctl error taxonomy. After
``failure_threshold`` consecutive failed calls the breaker opens and calls
fail fast with CircuitBreakerError until ``reset_after`` seconds pass.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from googleapiclient.errors import HttpError

from .errors import CircuitBreakerError, RateLimitError, classify_http_error

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class CircuitBreaker:
    def __init__(self, failure_threshold: int = 5, reset_after: float = 30.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return False
            if self._clock() - self._opened_at >= self.reset_after:
                # half-open: let the next call through
                self._opened_at = None
                self._failures = self.failure_threshold - 1
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.failure_threshold and self._opened_at is None:
                self._opened_at = self._clock()
                logger.warning("Circuit breaker opened after %d consecutive failures", self._failures)


class RequestExecutor:
    """
    Usage:
        executor = RequestExecutor()
        resp = executor.execute(gmail.users().watch(userId="me", body=body),
                                resource="gmail watch")
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    def execute(self, request: Any, resource: str, id: str = "", action: str = "",
                email: str = "") -> Any:
        """Run ``request.execute()``; raise a classified error on final failure."""
        if self.breaker.is_open:
            raise CircuitBreakerError()

        retries = 0
        while True:
            try:
                result = request.execute()
            except HttpError as e:
                status = int(getattr(e.resp, "status", 0) or 0)
                if status in _RETRYABLE_STATUS and retries < self.max_retries:
                    delay = self._delay(e, retries)
                    retries += 1
                    logger.debug("%s: HTTP %s, retry %d in %.1fs", resource, status, retries, delay)
                    self._sleep(delay)
                    continue
                if status in _RETRYABLE_STATUS:
                    self.breaker.record_failure()
                err = classify_http_error(e, resource, id=id, action=action,
                                          service=resource.split()[0], email=email)
                if isinstance(err, RateLimitError):
                    err = RateLimitError(retry_after=err.retry_after, retries=retries)
                raise err from e
            self.breaker.record_success()
            return result

    def _delay(self, err: HttpError, attempt: int) -> float:
        header = err.resp.get("retry-after") if hasattr(err.resp, "get") else None
        if header:
            try:
                return float(header)
            except ValueError:
                pass
        return self.base_delay * (2 ** attempt)
