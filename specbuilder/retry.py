"""Retry policy and a generic retrying call."""

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from specbuilder.config import MAX_BATCH_RETRIES, MAX_RETRY_BACKOFF
from specbuilder.logging_config import get_logger

__all__ = ["RetryPolicy", "call_with_retry"]

logger = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between.

    ``delay_for(failures)`` is ``min(base_delay * 2**failures, max_delay)``
    when ``exponential`` is set, otherwise a flat ``base_delay``.
    """

    max_attempts: int = MAX_BATCH_RETRIES
    base_delay: float = 1.0
    max_delay: float = MAX_RETRY_BACKOFF
    exponential: bool = True
    jitter: float = 0.0

    def delay_for(self, failures: int) -> float:
        if self.exponential:
            delay = min(self.base_delay * (2 ** failures), self.max_delay)
        else:
            delay = self.base_delay
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def exhausted(self, failures: int) -> bool:
        return failures >= self.max_attempts


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "request",
) -> T:
    """Call ``func`` until it succeeds or the policy runs out of attempts.

    Args:
        func: Zero-argument callable to invoke
        policy: Attempt ceiling and backoff
        retry_on: Exception types that may be retried
        should_retry: Optional finer filter on a caught exception
        sleep: Sleep function (injectable for tests)
        description: Label used in log messages

    Returns:
        Whatever ``func`` returns

    Raises:
        The last exception once attempts are exhausted, or immediately for
        exceptions that are not retryable
    """
    failures = 0
    while True:
        try:
            return func()
        except retry_on as e:
            if should_retry is not None and not should_retry(e):
                raise
            failures += 1
            if policy.exhausted(failures):
                logger.error(f"{description} failed after {failures} attempts: {e}")
                raise
            delay = policy.delay_for(failures - 1)
            logger.warning(
                f"{description} failed ({e}), backing off {delay:.1f}s "
                f"(attempt {failures}/{policy.max_attempts})"
            )
            sleep(delay)
