# core/retry.py

import httpx
import asyncio
import random
import logging
import time
import inspect
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional, Any, Awaitable

from core.exceptions import DiagramServiceError
from core.metrics import record_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry behaviour.

    Attributes:
        max_attempts: Total number of attempts, including the first one (>= 1).
        base_delay: Delay before the first retry (seconds). Doubles per attempt.
        jitter_max: Upper bound of the uniform random jitter added to every delay (seconds).
        on_retry: Optional hook called before each retry sleep. Receives attempt (1-indexed),
                  delay (seconds), and the exception that triggered the retry.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    jitter_max: float = 0.25
    on_retry: Optional[Callable[[int, float, Exception], None]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.jitter_max < 0:
            raise ValueError("base_delay and jitter_max must be non-negative")


def backoff_delay(policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None) -> float:
    """
    Delay before retrying after the 0-indexed `attempt`.

    Always within [base_delay * 2**attempt, base_delay * 2**attempt + jitter_max).
    """
    exponential = policy.base_delay * (2 ** attempt)
    if policy.jitter_max <= 0:
        return exponential
    jitter = (rng or random).random() * policy.jitter_max
    return exponential + jitter


def is_transient(exc: BaseException) -> bool:
    """
    Default decision logic for retryable errors.

    Retries on:
        - Provider errors tagged transient at the adapter (rate limited, overloaded, transport)
        - Raw network/connection errors (httpx.TimeoutException, ConnectError, NetworkError)
    """
    if isinstance(exc, DiagramServiceError):
        return exc.is_transient

    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.NetworkError)):
        return True

    return False


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: Optional[RetryPolicy] = None,
    request_id: Optional[str] = None,
    label: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Execute an async function with retries.

    Important: This function should only be used on idempotent operations.
    For streams, retry only the stream-opening call, never the iteration.

    Args:
        func: Async callable that takes no arguments and returns an awaitable.
        policy: RetryPolicy instance; if None, a default policy is used.
        request_id: Optional identifier for logging correlation.
        label: Optional name of the target (model name) for logs and metrics.
        sleep: Coroutine used for backoff sleeps.

    Returns:
        Result of the function call.

    Raises:
        The last exception encountered if all attempts fail or if a non-retryable error occurs.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    start_time = time.monotonic()

    while True:
        try:
            return await func()
        except asyncio.CancelledError:
            # Never retry cancellation
            raise
        except Exception as e:
            exc = e

        should_retry = is_transient(exc)
        elapsed = time.monotonic() - start_time

        if not should_retry or attempt >= policy.max_attempts - 1:
            logger.warning(
                "Retry exhausted or non-retryable error",
                extra={
                    "event": "retry_failed",
                    "target": label,
                    "attempt": attempt + 1,
                    "max_attempts": policy.max_attempts,
                    "retryable": should_retry,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                    "request_id": request_id,
                    "elapsed_seconds": round(elapsed, 3),
                },
            )
            raise exc

        delay = backoff_delay(policy, attempt)

        # Optional hook for metrics or tests
        if policy.on_retry:
            try:
                policy.on_retry(attempt + 1, delay, exc)
            except Exception:
                logger.debug("on_retry hook failed", exc_info=True)

        record_retry(label or "unknown", getattr(exc, "reason", None) or type(exc).__name__)

        logger.warning(
            "Retrying after failure",
            extra={
                "event": "retry_attempt",
                "target": label,
                "attempt": attempt + 1,
                "delay": round(delay, 3),
                "error_type": type(exc).__name__,
                "request_id": request_id,
                "elapsed_seconds": round(elapsed, 3),
            },
        )

        await sleep(delay)
        attempt += 1


def async_retry(policy: Optional[RetryPolicy] = None):
    """
    Decorator that wraps an async function with retry logic.

    Example:
        @async_retry(RetryPolicy(max_attempts=4, base_delay=1))
        async def fetch_data():
            ...
    """
    policy = policy or RetryPolicy()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        # Prevent accidentally decorating async generator functions (streams)
        if inspect.isasyncgenfunction(func):
            raise TypeError(
                "async_retry cannot be applied to async generator (streaming) functions. "
                "For streaming endpoints: retry only the stream-opening call, then iterate "
                "the returned async-iterator without retrying the generator itself."
            )

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry_async(lambda: func(*args, **kwargs), policy=policy, label=func.__name__)
        return wrapper
    return decorator
