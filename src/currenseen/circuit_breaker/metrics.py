"""Observability hooks for circuit breakers."""

from __future__ import annotations

from typing import Protocol

import structlog

from currenseen.circuit_breaker.state import CircuitState
from currenseen.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Events are emitted after the breaker lock is released, so a listener
        may observe a state that has already moved on.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(
        self, name: str, exc: BaseException | None, elapsed: float
    ) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener:
    """Write breaker transitions and rejections to the structured log."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger(__name__)

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_breaker_opened",
                breaker=name,
                previous_state=str(old),
            )
            return
        log_info(
            self._logger,
            "circuit_breaker_state_changed",
            breaker=name,
            previous_state=str(old),
            state=str(new),
        )

    async def on_call_rejected(self, name: str) -> None:
        log_info(self._logger, "circuit_breaker_call_rejected", breaker=name)

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        return None

    async def on_call_failed(
        self, name: str, exc: BaseException | None, elapsed: float
    ) -> None:
        log_warning(
            self._logger,
            "circuit_breaker_call_failed",
            breaker=name,
            error_type=None if exc is None else exc.__class__.__name__,
            elapsed_seconds=round(elapsed, 3),
        )
