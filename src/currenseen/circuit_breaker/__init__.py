"""Framework-agnostic async circuit breaker.

Key behavior notes:
  - ``admit()`` is the only call that moves ``OPEN`` to ``HALF_OPEN``; it does
    so once the cooldown has elapsed and resets both counters.
  - ``HALF_OPEN`` admits every caller. One failure reopens the circuit and
    restarts the cooldown; ``success_threshold`` successes close it.
  - Outcomes reported while ``OPEN`` (calls admitted before the trip) are
    ignored.
"""

from currenseen.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from currenseen.circuit_breaker.exceptions import CircuitOpenError
from currenseen.circuit_breaker.metrics import BreakerListener, LoggingBreakerListener
from currenseen.circuit_breaker.state import (
    ALLOWED_TRANSITIONS,
    BreakerSnapshot,
    CircuitState,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "LoggingBreakerListener",
]
