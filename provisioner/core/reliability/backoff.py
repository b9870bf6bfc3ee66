"""
Backoff — bounded exponential retry with jitter.

Used by handlers whose actions touch the network. The engine itself
never retries; it only sees the final outcome.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """All attempts failed; ``last_error`` is the final one."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class Backoff:
    """Retry schedule: ``attempts`` tries, delays doubling from ``base_delay``."""

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3  # fraction of the delay added at random

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)

    def delays(self) -> Iterator[float]:
        """Delays between consecutive attempts (``attempts - 1`` values)."""
        for attempt in range(1, max(self.attempts, 1)):
            yield self.delay(attempt)

    def call(
        self,
        fn: Callable[[], T],
        *,
        retry_on: Callable[[BaseException], bool],
        sleep: Callable[[float], None] = time.sleep,
        label: str = "",
    ) -> T:
        """Call ``fn`` until it returns, retrying errors ``retry_on`` accepts.

        Errors ``retry_on`` rejects propagate immediately.

        Raises:
            RetryExhausted: Every attempt raised a retryable error.
        """
        attempts = max(self.attempts, 1)
        delays = self.delays()
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as e:
                if not retry_on(e):
                    raise
                if attempt == attempts:
                    raise RetryExhausted(attempts, e) from e
                wait = next(delays)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    label or "Operation", attempt, attempts, e, wait,
                )
                sleep(wait)
        raise AssertionError("unreachable")
