"""Bounded exponential backoff for transient failures."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from arch_bootstrap.logging import EventLogger, LoggerFactory
from arch_bootstrap.storage.exceptions import TransientError


log = LoggerFactory.for_pipeline()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


NO_RETRY = RetryPolicy(attempts=1)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    operation: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    budget: Optional[Callable[[], Optional[float]]] = None,
) -> T:
    """Call ``fn`` until it succeeds or the policy gives up.

    Only TransientError is retried; anything else propagates at once. The
    last TransientError is re-raised when attempts run out, or earlier if
    ``budget`` reports less time left than the next delay.
    """
    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except TransientError as error:
            if attempt == policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            remaining = budget() if budget else None
            if remaining is not None and remaining <= delay:
                raise
            EventLogger.log_retry(log, operation, attempt, policy.attempts, delay, str(error))
            log.trace(f"{operation}: backing off {delay:.1f}s")
            sleep(delay)
    raise AssertionError("unreachable")
