"""Retry policies for transient backend failures.

``OptimisticUpdateManager.retry`` asks its policy two questions after each
failed attempt: ``should_retry(retries_made)`` and, if so,
``next_delay(retries_made - 1)``. The first retry follows the failed call
immediately; the waits above sit between retries.

Example:
    >>> backoff = ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    >>> [backoff.next_delay(n) for n in range(3)]
    [1.0, 2.0, 4.0]
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass


class RetryStrategy(ABC):
    max_retries: int

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before retry ``attempt + 1`` (``attempt`` is zero-based)."""

    def should_retry(self, attempt: int) -> bool:
        """True while fewer than ``max_retries`` retries have been made."""
        return attempt < self.max_retries


@dataclass
class ExponentialBackoff(RetryStrategy):
    """``min(base_delay * multiplier ** attempt, max_delay)``, optionally jittered.

    Without jitter the delays never decrease and never exceed ``max_delay``.
    Jitter spreads simultaneous retries of many updates by up to
    ``jitter_range`` of the delay, still clamped to ``[0, max_delay]``.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * self.multiplier ** attempt, self.max_delay)
        if not self.jitter:
            return delay
        spread = delay * self.jitter_range
        return min(max(0.0, delay + random.uniform(-spread, spread)), self.max_delay)


@dataclass
class NoRetry(RetryStrategy):
    """Roll back on the first failure."""

    max_retries: int = 0

    def next_delay(self, attempt: int) -> float:
        return 0.0
