"""
Retry policy shared by the release locator and the download engine.

Delays grow exponentially from ``base_delay`` and are capped at
``max_delay``. A proportional random jitter is applied so that parallel
workers do not hammer the same server in lockstep.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised by RetryPolicy.call when every attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_attempts: Total number of attempts, including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        jitter: Fraction of the delay added or removed at random (0 disables)
        sleep: Replaces the real wait (tests record delays with it); by default
            the policy waits on the cancel event when one is given
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    sleep: Optional[Callable[[float], None]] = field(default=None, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay(self, attempt: int) -> float:
        """
        Delay to wait after the given failed attempt (1-based).

        Example:
            >>> RetryPolicy(base_delay=1.0, jitter=0).delay(3)
            4.0
        """
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.uniform(-1, 1)
        return max(delay, 0.0)

    def call(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "operation",
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        """
        Call ``fn`` until it succeeds or the attempt ceiling is reached.

        Only exceptions listed in ``retry_on`` are retried; anything else
        propagates immediately. When ``cancel_event`` is given, the backoff
        waits on it and setting it ends the retries at once.

        Raises:
            RetryExhausted: After ``max_attempts`` retryable failures
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except retry_on as e:
                if attempt == self.max_attempts or _is_set(cancel_event):
                    raise RetryExhausted(attempt, e) from e

                wait = self.delay(attempt)
                logger.warning(
                    f"{description} attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {wait:.1f}s..."
                )
                if self.sleep is not None:
                    self.sleep(wait)
                elif cancel_event is None:
                    time.sleep(wait)
                elif cancel_event.wait(wait):
                    raise RetryExhausted(attempt, e) from e

        # max_attempts >= 1 means the loop always returns or raises
        raise AssertionError("unreachable")


def _is_set(event: Optional[threading.Event]) -> bool:
    return event is not None and event.is_set()
