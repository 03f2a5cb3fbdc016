from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.retry import retry_base

from currenseen.errors import TransientError

RETRY_STATUSES = frozenset({500, 502, 503, 504})

retry_if_transient = retry_if_exception_type(TransientError)


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Configuration for retry attempt count and exponential backoff."""

    attempts: int = 3
    initial_seconds: float = 0.1
    max_seconds: float = 5.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.initial_seconds < 0:
            raise ValueError("initial_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.initial_seconds:
            raise ValueError("max_seconds must be >= initial_seconds")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt_number: int) -> float:
        """Backoff slept after failed attempt ``attempt_number`` (1-based)."""
        delay = self.initial_seconds * self.multiplier ** (attempt_number - 1)
        return min(delay, self.max_seconds)


def build_exponential_retrying(
    *,
    policy: RetryBackoffPolicy,
    retry: retry_base = retry_if_transient,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with capped exponential backoff.

    The n-th backoff is ``initial_seconds * multiplier ** (n - 1)`` capped at
    ``max_seconds``. ``sleep`` lets callers make backoff interruptible.
    """
    options: dict[str, Any] = {
        "retry": retry,
        "wait": wait_exponential(
            multiplier=policy.initial_seconds,
            exp_base=policy.multiplier,
            max=policy.max_seconds,
        ),
        "stop": stop_after_attempt(policy.attempts),
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)
