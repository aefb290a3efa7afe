"""Retrying wrapper around a requests-style send function."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import requests
from requests.exceptions import ChunkedEncodingError, ConnectionError, ContentDecodingError, Timeout

from ..errors import TransientTransportError
from ..security import redact_headers, redact_url

logger = logging.getLogger(__name__)

SendFunc = Callable[..., requests.Response]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    min_wait: float = 0.2
    max_wait: float = 10.0
    factor: float = 2.0
    jitter: float = 0.1
    max_retry_after: float = 60.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_attempts", max(1, int(self.max_attempts)))
        object.__setattr__(self, "min_wait", max(0.0, float(self.min_wait)))
        object.__setattr__(self, "max_wait", max(self.min_wait, float(self.max_wait)))
        object.__setattr__(self, "max_retry_after", max(self.max_wait, float(self.max_retry_after)))

    def backoff(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        base = min(self.max_wait, self.min_wait * (self.factor ** max(attempt - 1, 0)))
        spread = base * self.jitter
        return max(0.0, base + (rand() * 2.0 - 1.0) * spread)


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def retry_after_seconds(response: requests.Response) -> float | None:
    raw = (response.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class RetryTransport:
    """Compose bounded exponential-backoff retry around ``send``.

    Connection errors, broken response bodies, timeouts, 5xx and 429 are retried; every other response,
    401 included, goes back to the caller untouched. After ``max_attempts``
    failed attempts a ``TransientTransportError`` is raised. A ``Retry-After``
    hint may stretch a wait up to ``max_retry_after``.
    """

    def __init__(
        self,
        send: SendFunc,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._send = send
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        attempts = self.policy.max_attempts
        last_error: Exception | None = None
        last_status: int | None = None
        safe_url = redact_url(url)

        for attempt in range(1, attempts + 1):
            hint: float | None = None
            try:
                logger.debug(
                    "registry request attempt=%s/%s method=%s url=%s headers=%s",
                    attempt,
                    attempts,
                    method,
                    safe_url,
                    redact_headers(kwargs.get("headers")),
                )
                response = self._send(method, url, **kwargs)
            except Timeout as exc:
                last_error = exc
                logger.warning("registry timeout attempt=%s/%s method=%s url=%s", attempt, attempts, method, safe_url)
            except (ConnectionError, ChunkedEncodingError, ContentDecodingError) as exc:
                last_error = exc
                logger.warning(
                    "registry connection error attempt=%s/%s method=%s url=%s: %s",
                    attempt,
                    attempts,
                    method,
                    safe_url,
                    exc,
                )
            else:
                status = response.status_code
                if not is_retryable_status(status):
                    return response
                last_status = status
                last_error = None
                hint = retry_after_seconds(response)
                response.close()
                logger.warning(
                    "registry upstream error status=%s attempt=%s/%s method=%s url=%s",
                    status,
                    attempt,
                    attempts,
                    method,
                    safe_url,
                )

            if attempt < attempts:
                delay = self.policy.backoff(attempt)
                if hint is not None:
                    delay = min(max(delay, hint), self.policy.max_retry_after)
                self._sleep(delay)

        detail = f"status={last_status}" if last_status is not None else f"error={last_error}"
        raise TransientTransportError(
            f"{method} {safe_url} failed after {attempts} attempts ({detail})",
            attempts=attempts,
            status_code=last_status,
        ) from last_error

    __call__ = request
