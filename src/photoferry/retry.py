"""Exponential backoff with jitter for remote calls."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import random
import time
from typing import Callable, Optional, TypeVar

import httpx

from photoferry.errors import OperationCancelled, RemoteApiError
from photoferry.settings import settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

_NETWORK_MARKERS = ("network", "timeout", "timed out", "econnreset", "econnrefused", "etimedout", "connection reset")
_AUTH_MARKERS = ("unauthorized", "forbidden", "invalid_grant")


def is_retryable_error(error: BaseException) -> bool:
    """Default classifier: retry 429, 5xx and network errors; never 4xx, auth or cancellation."""
    if isinstance(error, OperationCancelled):
        return False

    status_code = getattr(error, "status_code", None)
    if isinstance(error, RemoteApiError) or isinstance(status_code, int):
        if status_code == 429:
            return True
        if status_code is not None and 500 <= status_code < 600:
            return True
        if status_code is not None and 400 <= status_code < 500:
            return False

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, ConnectionError, TimeoutError)):
        return True

    message = str(error).lower()
    if any(marker in message for marker in _NETWORK_MARKERS):
        return True
    if any(marker in message for marker in _AUTH_MARKERS):
        return False

    # Unknown errors are retried.
    return True


def is_rate_limit_error(error: BaseException) -> bool:
    return getattr(error, "status_code", None) == 429


@dataclass
class RetryPolicy:
    max_retries: int = 5
    initial_delay: float = 0.3
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None
    should_retry: Callable[[BaseException], bool] = is_retryable_error

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        values = {
            "max_retries": settings.retry_max_retries,
            "initial_delay": settings.retry_initial_delay_seconds,
            "max_delay": settings.retry_max_delay_seconds,
            "backoff_multiplier": settings.retry_backoff_multiplier,
        }
        values.update(overrides)
        return cls(**values)


def compute_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    backoff_multiplier: float,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """Capped exponential delay plus a uniform jitter in [0, delay]."""
    capped = min(initial_delay * (backoff_multiplier ** attempt), max_delay)
    return capped + capped * rand()


def run_with_retry(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `operation`, retrying retryable failures with exponential backoff.

    Non-retryable errors and the error of the final attempt are re-raised
    unchanged. `policy.on_retry(error, attempt, delay)` runs before each
    sleep; callers use it to signal a shared pause.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return operation()
        except OperationCancelled:
            logger.info("Operation cancelled, not retrying")
            raise
        except Exception as exc:
            if not policy.should_retry(exc):
                logger.debug("Error is not retryable: %s (attempt %s)", exc, attempt)
                raise
            if attempt >= policy.max_retries:
                logger.warning("Max retries exhausted after %s attempt(s): %s", attempt + 1, exc)
                raise

            delay = compute_delay(
                attempt,
                policy.initial_delay,
                policy.max_delay,
                policy.backoff_multiplier,
            )
            attempt += 1
            logger.info(
                "Retrying operation after error (attempt %s/%s, delay %.2fs): %s",
                attempt,
                policy.max_retries,
                delay,
                exc,
            )
            if policy.on_retry:
                policy.on_retry(exc, attempt, delay)
            sleep(delay)
