"""Retry policy and a generic retry combinator for remote calls."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientServiceError(Exception):
    """A remote failure worth retrying (rate limit, 5xx, timeout)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3          # retries after the first attempt
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0           # fraction of the delay added at random, 0 disables
    retry_on: tuple = (TransientServiceError,)

    def delay(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (1-based): base * 2^(n-1), capped."""
        delay = self.base_delay * (2 ** (retry_number - 1))
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return min(delay, self.max_delay)

    def should_retry(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    label: str = "call",
    sleep: Optional[Callable[[float], None]] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Run ``fn``, retrying transient failures with exponential backoff.

    Non-transient errors propagate immediately. After ``policy.max_retries``
    retries the last transient error propagates.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if not policy.should_retry(e):
                raise
            attempt += 1
            if attempt > policy.max_retries:
                logger.warning("Max retries (%d) exceeded for %s: %s", policy.max_retries, label, e)
                raise
            delay = policy.delay(attempt)
            logger.warning("Retry %d/%d for %s in %.2fs: %s",
                           attempt, policy.max_retries, label, delay, e)
            if on_retry:
                on_retry(attempt, e)
            (sleep or time.sleep)(delay)
