"""Wall-clock abstraction consulted for every freshness decision."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of timezone-aware wall-clock instants."""

    def now(self) -> datetime:
        """Return the current instant in UTC."""


class SystemClock:
    """Production clock backed by ``datetime.now(UTC)``."""

    def now(self) -> datetime:
        return datetime.now(UTC)
