"""
Retry policy for provider calls.

Exponential backoff with a cap and random jitter:
    delay(attempt) = min(base * 2**attempt, cap) + uniform(0, that delay)
"""

import random
from dataclasses import dataclass
from typing import Callable, Tuple

from transloom.ai.exceptions import ProviderError, ProviderErrorKind


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_seconds: float = 1.0
    max_seconds: float = 60.0
    jitter: bool = True
    random_fn: Callable[[], float] = random.random

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based), without jitter."""
        return min(self.max_seconds, self.base_seconds * (2 ** max(attempt, 0)))

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay_for(attempt)
        if self.jitter and delay > 0:
            delay += delay * self.random_fn()
        return delay

    def should_retry(self, error: BaseException, attempts_made: int) -> bool:
        """Retry transient errors until ``max_attempts`` calls have been made."""
        _, transient = classify(error)
        return transient and attempts_made < self.max_attempts


def classify(error: BaseException) -> Tuple[ProviderErrorKind, bool]:
    """
    Categorize an error raised by a provider.

    Returns:
        Tuple of (kind, is_transient). Anything that is not a ProviderError
        counts as unknown, which is retried.
    """
    if isinstance(error, ProviderError):
        return error.kind, error.is_transient
    return ProviderErrorKind.UNKNOWN, True
