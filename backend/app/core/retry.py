"""Bounded exponential backoff for outbound provider calls."""

import logging
import time
from collections.abc import Callable
from typing import TypeVar

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from app.core.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (ProviderUnavailableError, httpx.TransportError)


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1).

    Used for retries scheduled in the database (parked events, outbox).
    """
    return float(base * (2 ** (attempt - 1)))


def _log_retry(operation: str, attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.2fs",
            operation,
            retry_state.attempt_number,
            attempts,
            exc,
            delay,
        )

    return before_sleep


def call_with_retries(
    func: Callable[[], T],
    *,
    operation: str,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` and retry transient failures with exponential backoff.

    ``ProviderUnavailableError`` and ``httpx.TransportError`` are retried;
    every other exception propagates immediately. After the last attempt the
    failure is re-raised as ``ProviderUnavailableError`` so callers can park
    the work.
    """
    attempts = max_attempts or settings.provider_max_attempts
    base = settings.provider_backoff_base_seconds if base_delay is None else base_delay

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=_log_retry(operation, attempts),
        sleep=sleep,
    )
    try:
        return retrying(func)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        logger.error("%s failed after %d attempts: %s", operation, attempts, last_error)
        raise ProviderUnavailableError(
            f"{operation} failed after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error


def raise_for_transient_status(response: httpx.Response, operation: str) -> None:
    """Raise ``ProviderUnavailableError`` for 5xx and 429 responses."""
    if response.status_code >= 500 or response.status_code == 429:
        raise ProviderUnavailableError(
            f"{operation} returned HTTP {response.status_code}",
            http_status=response.status_code,
        )
