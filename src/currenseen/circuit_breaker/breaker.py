"""Core circuit breaker implementation."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from currenseen.circuit_breaker.metrics import BreakerListener
from currenseen.circuit_breaker.state import (
    BreakerSnapshot,
    CircuitState,
    is_allowed_transition,
)

_Transition = tuple[CircuitState, CircuitState]


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures required while ``CLOSED`` before
            opening.
        cooldown: Seconds to stay ``OPEN`` before admitting probe traffic.
        success_threshold: Consecutive successes required while ``HALF_OPEN``
            before closing.
    """

    failure_threshold: int = 5
    cooldown: float = 30.0
    success_threshold: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cooldown <= 0:
            raise ValueError("cooldown must be > 0")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")


class CircuitBreaker:
    """Three-state failure detector guarding one outbound dependency.

    The breaker never decides what a failure is. Callers pair every
    ``admit()`` that returned ``True`` with exactly one ``record_success`` or
    ``record_failure``. While ``HALF_OPEN`` every caller is admitted; the first
    failure reopens the circuit and ``success_threshold`` consecutive successes
    close it.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name used in logs and errors.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
            monotonic: Clock used for the cooldown window.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> BreakerSnapshot:
        """Return a consistent view of the breaker counters."""
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                opened_at=self._opened_at,
                retry_after=self._retry_after_locked(self._monotonic()),
            )

    def retry_after(self) -> float:
        """Seconds until an ``OPEN`` breaker admits a probe; 0 otherwise."""
        with self._lock:
            return self._retry_after_locked(self._monotonic())

    def _retry_after_locked(self, now: float) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        elapsed = now - self._opened_at
        return max(self.config.cooldown - elapsed, 0.0)

    def _reset_counts_locked(self) -> None:
        self._failure_count = 0
        self._success_count = 0

    def _transition_locked(self, new: CircuitState, now: float) -> _Transition:
        old = self._state
        if not is_allowed_transition(old, new):
            raise RuntimeError(f"illegal breaker transition {old} -> {new}")
        self._state = new
        self._reset_counts_locked()
        self._opened_at = now if new == CircuitState.OPEN else None
        return old, new

    async def admit(self) -> bool:
        """Return whether a call is permitted right now.

        An ``OPEN`` breaker whose cooldown has elapsed moves to ``HALF_OPEN``
        and admits the caller.
        """
        transition: _Transition | None = None
        with self._lock:
            now = self._monotonic()
            if self._state == CircuitState.OPEN:
                if self._retry_after_locked(now) > 0:
                    allowed = False
                else:
                    transition = self._transition_locked(CircuitState.HALF_OPEN, now)
                    allowed = True
            else:
                allowed = True

        if transition is not None:
            await self._emit_state_change(*transition)
        if not allowed:
            await self._emit_call_rejected()
        return allowed

    async def record_success(self, *, elapsed: float = 0.0) -> None:
        """Report that an admitted call succeeded."""
        transition: _Transition | None = None
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
            elif self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    transition = self._transition_locked(
                        CircuitState.CLOSED, self._monotonic()
                    )

        await self._emit_call_succeeded(elapsed)
        if transition is not None:
            await self._emit_state_change(*transition)

    async def record_failure(
        self,
        exc: BaseException | None = None,
        *,
        elapsed: float = 0.0,
    ) -> None:
        """Report that an admitted call failed."""
        transition: _Transition | None = None
        with self._lock:
            now = self._monotonic()
            if self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    transition = self._transition_locked(CircuitState.OPEN, now)
            elif self._state == CircuitState.HALF_OPEN:
                transition = self._transition_locked(CircuitState.OPEN, now)

        await self._emit_call_failed(exc, elapsed)
        if transition is not None:
            await self._emit_state_change(*transition)

    async def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: BaseException | None, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue
