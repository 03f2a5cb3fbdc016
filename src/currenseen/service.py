"""Read-through rate cache with stale fallback.

``RateService`` consults the store first, goes to the breaker-guarded provider
on a miss or stale hit, writes successful fetches back, and serves cached data
marked ``stale=True`` when the provider cannot be consulted.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from datetime import timedelta
from enum import StrEnum
from typing import Protocol

import structlog

from currenseen.circuit_breaker import CircuitOpenError
from currenseen.clock import Clock, SystemClock
from currenseen.context import CallContext
from currenseen.errors import (
    CONTEXT_ERRORS,
    CorruptRecordError,
    CurrencyMismatchError,
    CurrenseenError,
    InvalidInputError,
    ProviderUnavailableError,
    RateNotFoundError,
    StoreError,
)
from currenseen.logging import StructuredLogger, log_info, log_warning
from currenseen.provider.client import RateProvider
from currenseen.rates.models import CurrencyCode, Rate, RateRecord
from currenseen.store.base import RateStore

DEFAULT_CACHE_TTL = timedelta(hours=1)

OP_GET_RATE = "get_rate"
OP_GET_ALL_RATES = "get_all_rates"

FALLBACK_ERRORS: tuple[type[CurrenseenError], ...] = (
    ProviderUnavailableError,
    CircuitOpenError,
    *CONTEXT_ERRORS,
)


class RateOutcome(StrEnum):
    """How one service call was satisfied."""

    FRESH_HIT = "fresh_hit"
    STALE_REFRESH = "stale_refresh"
    STALE_FALLBACK = "stale_fallback"
    UPSTREAM_MISS = "upstream_miss"
    INVALID_INPUT = "invalid_input"


class OutcomeListener(Protocol):
    """Receives one outcome per ``get_rate``/``get_all_rates`` call."""

    async def on_outcome(
        self,
        operation: str,
        outcome: RateOutcome,
        base: str,
        target: str | None,
    ) -> None:
        """Handle a call outcome."""


class OutcomeCounter:
    """Tally outcomes per operation."""

    def __init__(self) -> None:
        self._counts: Counter[tuple[str, RateOutcome]] = Counter()

    async def on_outcome(
        self,
        operation: str,
        outcome: RateOutcome,
        base: str,
        target: str | None,
    ) -> None:
        self._counts[(operation, outcome)] += 1

    def count(self, outcome: RateOutcome, operation: str | None = None) -> int:
        return sum(
            value
            for (op, seen), value in self._counts.items()
            if seen == outcome and (operation is None or op == operation)
        )

    def totals(self) -> dict[str, int]:
        """Counts per outcome across operations, every outcome included."""
        return {str(outcome): self.count(outcome) for outcome in RateOutcome}


def validate_pair(base: str, target: str) -> tuple[CurrencyCode, CurrencyCode]:
    """Normalize both codes and reject an identical base and target."""
    base_code = CurrencyCode(base)
    target_code = CurrencyCode(target)
    if base_code == target_code:
        raise CurrencyMismatchError(base_code)
    return base_code, target_code


class RateService:
    """Serve exchange rates from the store, refreshing through the provider."""

    def __init__(
        self,
        store: RateStore,
        provider: RateProvider,
        *,
        clock: Clock | None = None,
        cache_ttl: timedelta = DEFAULT_CACHE_TTL,
        listeners: Sequence[OutcomeListener] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build the service.

        Args:
            store: Durable rate store.
            provider: Upstream provider, normally breaker-guarded.
            clock: Clock consulted once per call for freshness decisions.
            cache_ttl: Freshness window; ``<= 0`` means cached rates never go
                stale.
            listeners: Outcome hooks notified after every call.
            logger: Structured logger override.
        """
        self._store = store
        self._provider = provider
        self._clock = SystemClock() if clock is None else clock
        self._ttl = cache_ttl
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def cache_ttl(self) -> timedelta:
        return self._ttl

    async def get_rate(self, ctx: CallContext, base: str, target: str) -> Rate:
        """Return the rate for one pair.

        Raises:
            InvalidInputError: Malformed codes or identical base and target.
            CircuitOpenError: The breaker refused the call and nothing is cached.
            ProviderUnavailableError: The upstream failed and nothing is cached.
            RequestCancelledError: The request was cancelled and nothing is cached.
            DeadlineExceededError: The deadline passed and nothing is cached.
            CorruptRecordError: The cached record failed validation.
        """
        try:
            base_code, target_code = validate_pair(base, target)
        except InvalidInputError:
            await self._emit(OP_GET_RATE, RateOutcome.INVALID_INPUT, base, target)
            raise

        now = self._clock.now()
        cached = await self._read_cached(ctx, base_code, target_code)
        if cached is not None and cached.is_fresh(now, self._ttl):
            await self._emit(OP_GET_RATE, RateOutcome.FRESH_HIT, base_code, target_code)
            return cached

        try:
            fetched = await self._provider.fetch_one(ctx, base_code, target_code)
        except FALLBACK_ERRORS as exc:
            fallback = await self._stale_fallback(ctx, base_code, target_code, cached)
            if fallback is None:
                await self._upstream_miss(OP_GET_RATE, exc, base_code, target_code)
                raise
            log_warning(
                self._logger,
                "rate_served_stale",
                base=str(base_code),
                target=str(target_code),
                error_kind=str(exc.kind),
                observed_at=fallback.observed_at.isoformat(),
            )
            await self._emit(
                OP_GET_RATE, RateOutcome.STALE_FALLBACK, base_code, target_code
            )
            return fallback

        await self._write_back(ctx, fetched)
        await self._emit(OP_GET_RATE, RateOutcome.STALE_REFRESH, base_code, target_code)
        return fetched

    async def get_all_rates(self, ctx: CallContext, base: str) -> list[Rate]:
        """Return every known rate for ``base``.

        A cached set is served only when it is non-empty and every element is
        fresh; otherwise the full list is refetched. Cached records missing
        from the refetch stay in the store.
        """
        try:
            base_code = CurrencyCode(base)
        except InvalidInputError:
            await self._emit(OP_GET_ALL_RATES, RateOutcome.INVALID_INPUT, base, None)
            raise

        now = self._clock.now()
        cached = await self._read_cached_by_base(ctx, base_code)
        if cached and all(rate.is_fresh(now, self._ttl) for rate in cached):
            await self._emit(OP_GET_ALL_RATES, RateOutcome.FRESH_HIT, base_code, None)
            return cached

        try:
            fetched = await self._provider.fetch_all(ctx, base_code)
        except FALLBACK_ERRORS as exc:
            if not cached:
                await self._upstream_miss(OP_GET_ALL_RATES, exc, base_code, None)
                raise
            log_warning(
                self._logger,
                "rates_served_stale",
                base=str(base_code),
                error_kind=str(exc.kind),
                rate_count=len(cached),
            )
            await self._emit(
                OP_GET_ALL_RATES, RateOutcome.STALE_FALLBACK, base_code, None
            )
            return [rate.as_stale() for rate in cached]

        for rate in fetched:
            await self._write_back(ctx, rate)
        await self._emit(OP_GET_ALL_RATES, RateOutcome.STALE_REFRESH, base_code, None)
        return fetched

    def _to_rate(self, record: RateRecord) -> Rate:
        try:
            rate = record.to_rate()
            rate.check_not_future(self._clock.now())
        except InvalidInputError as exc:
            raise CorruptRecordError(record.key, cause=exc) from exc
        return rate

    async def _read_cached(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> Rate | None:
        try:
            record = await self._store.get(ctx, base, target)
        except (RateNotFoundError, *CONTEXT_ERRORS):
            return None
        except StoreError as exc:
            log_warning(
                self._logger,
                "rate_store_read_failed",
                base=str(base),
                target=str(target),
                error=str(exc),
            )
            return None
        return self._to_rate(record)

    async def _read_cached_by_base(
        self, ctx: CallContext, base: CurrencyCode
    ) -> list[Rate]:
        try:
            records = await self._store.get_by_base(ctx, base)
        except CONTEXT_ERRORS:
            return []
        except StoreError as exc:
            log_warning(
                self._logger,
                "rate_store_read_failed",
                base=str(base),
                error=str(exc),
            )
            return []
        return [self._to_rate(record) for record in records]

    async def _stale_fallback(
        self,
        ctx: CallContext,
        base: CurrencyCode,
        target: CurrencyCode,
        cached: Rate | None,
    ) -> Rate | None:
        if cached is not None:
            return cached.as_stale()
        try:
            record = await self._store.get_stale(ctx, base, target)
        except (RateNotFoundError, StoreError, *CONTEXT_ERRORS):
            return None
        return self._to_rate(record).as_stale()

    async def _write_back(self, ctx: CallContext, rate: Rate) -> None:
        if ctx.done():
            log_warning(
                self._logger,
                "rate_write_skipped",
                base=str(rate.base),
                target=str(rate.target),
                reason="request_context_done",
            )
            return
        try:
            await self._store.put(ctx, RateRecord.from_rate(rate), self._ttl)
        except CurrenseenError as exc:
            log_warning(
                self._logger,
                "rate_write_failed",
                base=str(rate.base),
                target=str(rate.target),
                error_kind=str(exc.kind),
                error=str(exc),
            )

    async def _upstream_miss(
        self,
        operation: str,
        exc: CurrenseenError,
        base: CurrencyCode,
        target: CurrencyCode | None,
    ) -> None:
        log_warning(
            self._logger,
            "rate_unavailable",
            operation=operation,
            base=str(base),
            target=None if target is None else str(target),
            error_kind=str(exc.kind),
            error=str(exc),
        )
        await self._emit(operation, RateOutcome.UPSTREAM_MISS, base, target)

    async def _emit(
        self,
        operation: str,
        outcome: RateOutcome,
        base: str,
        target: str | None,
    ) -> None:
        log_info(
            self._logger,
            "rate_outcome",
            operation=operation,
            outcome=str(outcome),
            base=str(base),
            target=None if target is None else str(target),
        )
        for listener in self._listeners:
            try:
                await listener.on_outcome(
                    operation,
                    outcome,
                    str(base),
                    None if target is None else str(target),
                )
            except Exception as exc:
                log_warning(
                    self._logger,
                    "rate_outcome_listener_failed",
                    listener=type(listener).__name__,
                    error=str(exc),
                )
