"""
Retry utilities for Kubernetes API calls.

Transient API server failures are retried with exponential backoff. A 409
Conflict is never retried here: a stale resourceVersion means the whole
reconciliation pass must start again from fresh state.
"""
import functools
from typing import Callable, TypeVar

from kubernetes_asyncio.client import ApiException
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mongo_operator.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests (rate limiting)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if not isinstance(exception, ApiException):
        return False
    return exception.status in RETRYABLE_STATUS_CODES


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "k8s_api_call_failed_retrying",
        function=getattr(retry_state.fn, "__name__", str(retry_state.fn)),
        attempt=retry_state.attempt_number,
        delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error_type=type(exc).__name__,
        status_code=getattr(exc, "status", None),
        error=str(exc),
    )


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
) -> Callable:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)

    Example:
        @retry_on_k8s_error(max_retries=5, initial_delay=2.0)
        async def read_statefulset(name: str):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            retrying = AsyncRetrying(
                retry=retry_if_exception(is_retryable_k8s_error),
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_exponential(multiplier=initial_delay, max=max_delay),
                before_sleep=_log_retry,
                reraise=True,
            )
            return await retrying(func, *args, **kwargs)

        return wrapper
    return decorator


def backoff_delay(failures: int, base_delay: float, max_delay: float) -> float:
    """Exponential requeue delay after ``failures`` consecutive failed passes."""
    if failures <= 0:
        return 0.0
    return min(base_delay * (2 ** (failures - 1)), max_delay)
