"""
Retry policy shared by the price client and the ledger reader.

A policy is (max attempts, backoff function, retryable-error predicate).
Call sites build one and hand it a coroutine factory; the loop itself
lives here only.
"""
import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from repositioner.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

BackoffFn = Callable[[int], float]
RetryablePredicate = Callable[[BaseException], bool]


def exponential_backoff(base_delay: float = 1.0, max_delay: float = 5.0) -> BackoffFn:
    """Delay after attempt N (1-based): base * 2^(N-1), capped. 1s -> 2s -> 4s -> 5s."""
    def backoff(attempt: int) -> float:
        return min(base_delay * (2 ** (attempt - 1)), max_delay)
    return backoff


def fixed_backoff(delay: float = 1.0) -> BackoffFn:
    """Same delay after every attempt."""
    def backoff(attempt: int) -> float:
        return delay
    return backoff


def retry_on(*error_types: Type[BaseException]) -> RetryablePredicate:
    """Predicate accepting the given exception types."""
    def predicate(exc: BaseException) -> bool:
        return isinstance(exc, error_types)
    return predicate


@dataclass
class RetryPolicy:
    """
    Bounded retry with pluggable backoff.

    Attributes:
        max_attempts: Total attempts, including the first one
        backoff: Seconds to wait after a failed attempt (1-based attempt number)
        retryable: Returns True if the error may be retried
        sleep: Awaitable sleep, swappable in tests
    """
    max_attempts: int = 3
    backoff: BackoffFn = field(default_factory=exponential_backoff)
    retryable: RetryablePredicate = field(default=lambda exc: True)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        operation: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Await ``fn()`` until it succeeds or the budget is spent.

        Non-retryable errors propagate immediately. After the last attempt the
        final error is re-raised unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(
                        "RETRY_EXHAUSTED",
                        operation=operation,
                        attempts=attempt,
                        error=str(e) or e.__class__.__name__,
                    )
                    raise
                delay = self.backoff(attempt)
                if on_retry is not None:
                    on_retry(attempt, e)
                logger.warning(
                    "RETRY_SCHEDULED",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    wait=f"{delay:.2f}s",
                    error=str(e) or e.__class__.__name__,
                )
                await self.sleep(delay)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator to retry async functions on transient errors.

    Args:
        max_retries: Maximum number of retry attempts (after the first call)
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on. Defaults to anything
                          except programming errors (ValueError, TypeError).
    """
    def is_transient(exc: BaseException) -> bool:
        if transient_errors is not None:
            return isinstance(exc, transient_errors)
        return not isinstance(exc, (ValueError, TypeError))

    policy = RetryPolicy(
        max_attempts=max_retries + 1,
        backoff=exponential_backoff(base_delay, max_backoff),
        retryable=is_transient,
    )

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await policy.run(lambda: func(*args, **kwargs), operation=func.__name__)
        return wrapper
    return decorator
