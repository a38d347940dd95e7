"""Retry policies with jittered backoff for outbound HTTP calls."""

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random,
)

logger = structlog.get_logger(__name__)

RETRYABLE_HTTP_ERRORS = (
    httpx.HTTPStatusError,
    httpx.ConnectError,
    httpx.TimeoutException,
    httpx.RemoteProtocolError,
)


def is_transient_http_error(exc: BaseException) -> bool:
    """Server errors and transport failures are retried; 4xx answers are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, RETRYABLE_HTTP_ERRORS)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "http_retry_scheduled",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc) if exc else None,
    )


def registry_retrying(retries: int, min_wait_ms: int, max_wait_ms: int) -> AsyncRetrying:
    """Retry controller for open-data registry lookups.

    Args:
        retries: Retries after the first attempt (attempts = retries + 1)
        min_wait_ms: Lower bound of the random pause between attempts
        max_wait_ms: Upper bound of the random pause between attempts

    Returns:
        AsyncRetrying usable as ``async for attempt in ...``
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(0, retries) + 1),
        wait=wait_random(min=min_wait_ms / 1000.0, max=max_wait_ms / 1000.0),
        retry=retry_if_exception(is_transient_http_error),
        before_sleep=_log_before_sleep,
        reraise=True,
    )
