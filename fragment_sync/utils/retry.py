"""Retry policy for single RPC requests.

Only transport-level calls are retried. A reconciliation pass as a whole is
never retried; the next scheduled pass covers its window again.
"""

from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fragment_sync.utils.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Connection failures, rate limiting and 5xx answers are worth another try."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Retrying RPC request",
        extra={
            "ctx_attempt": state.attempt_number,
            "ctx_wait": round(state.next_action.sleep, 2) if state.next_action else None,
            "ctx_error": str(exc),
            "ctx_error_type": type(exc).__name__,
        },
    )


async def async_retry(
    fn: Callable[P, Awaitable[T]],
    *args: P.args,
    attempts: int = 3,
    base_wait: float = 0.2,
    max_wait: float = 2.0,
    retry_if: Callable[[BaseException], bool] = is_transient,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with exponential backoff between attempts.

    Args:
        fn: Async function to execute.
        attempts: Maximum number of attempts.
        base_wait: Base wait time in seconds.
        max_wait: Maximum wait time in seconds.
        retry_if: Predicate deciding whether an exception is retried.

    Raises:
        The last exception if all attempts fail, or the first one the
        predicate rejects.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_wait, max=max_wait),
        retry=retry_if_exception(retry_if),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await fn(*args, **kwargs)

    raise RuntimeError("Retry logic failed unexpectedly")
