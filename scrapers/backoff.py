"""Retry policy for HTTP calls against the remote source."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

import httpx

import config
from errors import SourceUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS = 429
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a call and how long to wait between tries.

    Rate-limit responses back off on ``rate_limit_delay``; every other
    transient failure backs off on the shorter ``base_delay``. Both grow
    linearly with the attempt number.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    rate_limit_delay: float = 2.0

    def backoff_for_status(self, status_code: int | None, attempt: int) -> float:
        if status_code == RATE_LIMIT_STATUS:
            return self.rate_limit_delay * attempt
        return self.base_delay * attempt

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=config.PNCP_RETRY_MAX_ATTEMPTS,
            base_delay=config.PNCP_RETRY_BASE_DELAY,
            rate_limit_delay=config.PNCP_RETRY_RATE_LIMIT_DELAY,
        )


def with_backoff(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    label: str = "request",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying retryable HTTP failures according to *policy*.

    Retries on httpx.HTTPStatusError with status 429 or 5xx and on
    httpx.TransportError (connection errors, timeouts). Any other HTTP
    status fails at once. Raises SourceUnavailable when the call cannot
    be completed.
    """
    policy = policy or RetryPolicy.from_config()
    last_exc: Exception | None = None
    last_status: int | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status not in RETRYABLE_STATUS_CODES:
                raise SourceUnavailable(
                    f"{label} failed with HTTP {status}", status_code=status,
                ) from exc
            last_exc, last_status = exc, status
        except httpx.TransportError as exc:
            last_exc, last_status = exc, None

        if attempt < policy.max_attempts:
            delay = policy.backoff_for_status(last_status, attempt)
            logger.warning(
                "[PNCP] %s attempt %d/%d failed (%s), retrying in %.1fs...",
                label, attempt, policy.max_attempts, last_exc, delay,
            )
            sleep(delay)

    raise SourceUnavailable(
        f"{label} failed after {policy.max_attempts} attempts: {last_exc}",
        status_code=last_status,
    ) from last_exc
