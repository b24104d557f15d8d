"""
Retry policy for transient request failures.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar

from loguru import logger

from querycache.services.errors import (
    CircuitOpenError,
    HttpStatusError,
    RateLimitError,
    ServiceError,
)

T = TypeVar("T")


def is_transient(err: BaseException) -> bool:
    """Timeouts, connection errors, 408/429 and 5xx are worth retrying."""
    if isinstance(err, CircuitOpenError):
        return False
    if isinstance(err, HttpStatusError):
        return err.status in (408, 429) or err.status >= 500
    return isinstance(err, (ServiceError, OSError))


@dataclass
class RetryPolicy:
    """
    Configuration for retry behavior.

    `backoff`, when given, maps the retry number (1-based) to a delay in
    seconds and replaces the built-in strategies.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False
    backoff_strategy: Literal["exponential", "linear", "fixed"] = "exponential"
    backoff: Callable[[int], float] | None = None
    should_retry: Callable[[BaseException], bool] = is_transient

    def delay_for(self, retry: int, err: BaseException | None = None) -> float:
        """Calculate delay before the given retry."""
        if isinstance(err, RateLimitError) and err.retry_after:
            return min(err.retry_after, self.max_delay)

        if self.backoff is not None:
            return max(0.0, self.backoff(retry))

        if self.backoff_strategy == "exponential":
            delay = self.base_delay * (self.exponential_base ** (retry - 1))
        elif self.backoff_strategy == "linear":
            delay = self.base_delay * retry
        else:
            delay = self.base_delay

        # Apply max delay cap
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_amount = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)


RetryOptions = RetryPolicy | int | None


def resolve_retry(options: RetryOptions) -> RetryPolicy | None:
    """None/0 disables retries, an int sets max_retries."""
    if options is None:
        return None
    if isinstance(options, int):
        return RetryPolicy(max_retries=options) if options > 0 else None
    return options


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None,
    label: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run fn, retrying per policy. The last error is re-raised unchanged once
    retries are exhausted or the error is not retryable.
    """
    retry = 0
    while True:
        try:
            result = await fn()
            if retry > 0:
                logger.info(f"Retry succeeded for {label[:80]} (retry {retry})")
            return result
        except Exception as e:
            if policy is None or retry >= policy.max_retries or not policy.should_retry(e):
                raise
            retry += 1
            delay = policy.delay_for(retry, e)
            logger.warning(
                f"Request {label[:80]} failed ({e}), retry {retry}/{policy.max_retries} "
                f"in {delay:.2f}s"
            )
            await sleep(delay)
