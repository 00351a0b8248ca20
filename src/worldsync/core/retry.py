"""Bounded retries with exponential backoff and an overall deadline.

Two budgets apply to every remote operation:

- the retry budget (``RetryPolicy``): how many attempts, and how long to wait
  between them;
- the overall deadline (``Deadline``): how long the whole logical operation
  may take, regardless of how many attempts remain.

A hung remote therefore never parks a caller forever.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from worldsync.core.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0

    def delays(self) -> list[float]:
        """Sleep durations between attempts (one fewer than ``max_attempts``)."""
        result: list[float] = []
        delay = self.initial_delay
        for _ in range(max(self.max_attempts - 1, 0)):
            result.append(delay)
            delay = min(delay * self.factor, self.max_delay)
        return result


class Deadline:
    """Monotonic overall time budget for one logical operation."""

    def __init__(self, operation: str, timeout: float | None, clock: Callable[[], float] = time.monotonic):
        self.operation = operation
        self.timeout = timeout
        self._clock = clock
        self._expires = None if timeout is None else clock() + timeout

    def remaining(self) -> float | None:
        """Seconds left, or None for an unbounded deadline."""
        if self._expires is None:
            return None
        return max(self._expires - self._clock(), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise OperationTimeoutError when the budget is spent."""
        if self.expired():
            raise OperationTimeoutError(self.operation, self.timeout or 0.0)

    def cap(self, value: float) -> float:
        """Clamp a per-call timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return value
        return min(value, remaining)


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool],
    deadline: Deadline | None = None,
    operation: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying transient failures only.

    Args:
        func: Zero-argument callable performing one attempt
        policy: Attempt count and backoff
        is_transient: Classifier; non-transient errors propagate immediately
        deadline: Overall budget; checked before each attempt and each sleep
        operation: Name used in log lines
        sleep: Injectable sleep (tests)

    Returns:
        The value returned by the first successful attempt

    Raises:
        OperationTimeoutError: If the deadline is exhausted
        Exception: The last transient error once attempts run out, or the
            first non-transient error
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        if deadline is not None:
            deadline.check()
        try:
            return func()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", operation, attempt, exc)
                raise
            delay = delays[attempt - 1]
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None and remaining <= delay:
                    logger.error("%s: deadline reached while retrying: %s", operation, exc)
                    raise OperationTimeoutError(operation, deadline.timeout or 0.0) from exc
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                operation,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            sleep(delay)


__all__ = ["Deadline", "RetryPolicy", "call_with_retry"]
