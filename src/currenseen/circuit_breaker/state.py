"""Breaker states, the legal transitions between them and read-only snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


ALLOWED_TRANSITIONS: frozenset[tuple[CircuitState, CircuitState]] = frozenset(
    {
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    }
)


def is_allowed_transition(old: CircuitState, new: CircuitState) -> bool:
    return (old, new) in ALLOWED_TRANSITIONS


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    """Counters and timers of one breaker, read under its lock.

    ``opened_at`` is a monotonic instant and only meaningful while ``OPEN``;
    ``retry_after`` is zero in every other state.
    """

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    opened_at: float | None
    retry_after: float

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def as_fields(self) -> dict[str, object]:
        """Flatten into log and health-check fields."""
        return {
            "state": str(self.state),
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "retry_after": round(self.retry_after, 3),
        }
