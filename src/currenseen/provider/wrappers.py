"""Retry and circuit-breaker decorators around a ``RateProvider``."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import RetryCallState

from currenseen.circuit_breaker import CircuitBreaker, CircuitOpenError
from currenseen.context import CallContext
from currenseen.errors import CONTEXT_ERRORS, InvalidInputError
from currenseen.logging import StructuredLogger, log_warning
from currenseen.provider.client import RateProvider
from currenseen.rates.models import CurrencyCode, Rate
from currenseen.retry import RetryBackoffPolicy, build_exponential_retrying

T = TypeVar("T")


class RetryingProvider:
    """Retry transient upstream failures with capped exponential backoff.

    Only ``TransientError`` subclasses are retried. Backoff sleeps end early
    when the request context is cancelled or its deadline passes.
    """

    def __init__(
        self,
        inner: RateProvider,
        *,
        policy: RetryBackoffPolicy | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._inner = inner
        self._policy = RetryBackoffPolicy() if policy is None else policy
        self._logger = logger or structlog.get_logger(__name__)

    async def fetch_one(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> Rate:
        return await self._run(
            ctx, "fetch_one", lambda: self._inner.fetch_one(ctx, base, target)
        )

    async def fetch_all(self, ctx: CallContext, base: CurrencyCode) -> list[Rate]:
        return await self._run(ctx, "fetch_all", lambda: self._inner.fetch_all(ctx, base))

    async def _run(
        self,
        ctx: CallContext,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        def _before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome is not None else None
            log_warning(
                self._logger,
                "provider_retry_scheduled",
                operation=operation,
                attempt=state.attempt_number,
                max_attempts=self._policy.attempts,
                delay_seconds=(
                    None if state.next_action is None else state.next_action.sleep
                ),
                error=None if error is None else str(error),
            )

        retrying = build_exponential_retrying(
            policy=self._policy,
            sleep=ctx.sleep,
            before_sleep=_before_sleep,
        )
        async for attempt in retrying:
            with attempt:
                ctx.raise_if_done()
                result = await call()
        return result


class BreakerGuardedProvider:
    """Route every upstream call through a shared circuit breaker.

    A denied ``admit()`` raises ``CircuitOpenError`` without touching the
    upstream. Context errors and input validation errors are not reported to
    the breaker; any other exception is recorded as a failure.
    """

    def __init__(
        self,
        inner: RateProvider,
        breaker: CircuitBreaker,
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._breaker = breaker
        self._monotonic = monotonic

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def fetch_one(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> Rate:
        return await self._guarded(ctx, lambda: self._inner.fetch_one(ctx, base, target))

    async def fetch_all(self, ctx: CallContext, base: CurrencyCode) -> list[Rate]:
        return await self._guarded(ctx, lambda: self._inner.fetch_all(ctx, base))

    async def _guarded(self, ctx: CallContext, call: Callable[[], Awaitable[T]]) -> T:
        ctx.raise_if_done()
        if not await self._breaker.admit():
            raise CircuitOpenError(
                self._breaker.name, retry_after=self._breaker.retry_after()
            )

        start = self._monotonic()
        try:
            result = await call()
        except (*CONTEXT_ERRORS, InvalidInputError):
            raise
        except Exception as exc:
            elapsed = max(self._monotonic() - start, 0.0)
            await self._breaker.record_failure(exc, elapsed=elapsed)
            raise
        elapsed = max(self._monotonic() - start, 0.0)
        await self._breaker.record_success(elapsed=elapsed)
        return result
