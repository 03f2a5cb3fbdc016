from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from currenseen.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from currenseen.context import CallContext
from currenseen.errors import (
    CorruptRecordError,
    CurrencyMismatchError,
    DeadlineExceededError,
    InvalidCurrencyCodeError,
    ProviderTransientError,
    ProviderUnavailableError,
    RequestCancelledError,
)
from currenseen.provider import BreakerGuardedProvider
from currenseen.rates.models import CurrencyCode, RateRecord
from currenseen.service import OutcomeCounter, RateOutcome, RateService
from tests.currenseen.support.fakes import (
    NOW_0,
    FakeClock,
    FakeLogger,
    FlakyStore,
    ScriptedProvider,
)

pytestmark = pytest.mark.asyncio

W = timedelta(hours=1)
USD = CurrencyCode("USD")
EUR = CurrencyCode("EUR")


def _service(
    store: FlakyStore,
    provider: object,
    clock: FakeClock,
    *,
    ttl: timedelta = W,
    counter: OutcomeCounter | None = None,
    logger: FakeLogger | None = None,
) -> RateService:
    return RateService(
        store,
        provider,
        clock=clock,
        cache_ttl=ttl,
        listeners=[counter] if counter is not None else None,
        logger=logger or FakeLogger(),
    )


async def test_fresh_hit_skips_upstream(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(minutes=30))
    counter = OutcomeCounter()
    service = _service(flaky_store, scripted_provider, fake_clock, counter=counter)

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert (rate.value, rate.stale) == (0.85, False)
    assert scripted_provider.call_count == 0
    assert counter.count(RateOutcome.FRESH_HIT) == 1


async def test_cache_miss_fetches_and_writes_through(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    scripted_provider.returns_value(0.86)
    counter = OutcomeCounter()
    service = _service(flaky_store, scripted_provider, fake_clock, counter=counter)

    rate = await service.get_rate(CallContext(), "usd", "eur")

    assert (rate.value, rate.stale, rate.observed_at) == (0.86, False, NOW_0)
    assert scripted_provider.call_count == 1
    stored = await flaky_store.get(CallContext(), USD, EUR)
    assert stored.to_rate() == rate
    assert counter.count(RateOutcome.STALE_REFRESH, "get_rate") == 1


async def test_stale_record_is_refreshed(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(hours=2))
    scripted_provider.returns_value(0.87)
    service = _service(flaky_store, scripted_provider, fake_clock)

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert (rate.value, rate.stale) == (0.87, False)
    assert (await flaky_store.get(CallContext(), USD, EUR)).value == 0.87


async def test_provider_failure_serves_stale_record(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(hours=2))
    scripted_provider.fails_with(ProviderTransientError("connection reset"))
    logger = FakeLogger()
    counter = OutcomeCounter()
    service = _service(
        flaky_store, scripted_provider, fake_clock, counter=counter, logger=logger
    )

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert (rate.value, rate.stale) == (0.85, True)
    assert "rate_served_stale" in logger.events
    assert counter.count(RateOutcome.STALE_FALLBACK) == 1
    assert (await flaky_store.get(CallContext(), USD, EUR)).stale is False


async def test_circuit_opens_then_recovers(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(hours=2))
    breaker = CircuitBreaker(
        "currency-api",
        config=CircuitBreakerConfig(failure_threshold=2, cooldown=0.05, success_threshold=1),
    )
    provider = BreakerGuardedProvider(scripted_provider, breaker)
    scripted_provider.fails_with(ProviderTransientError("down")).fails_with(
        ProviderTransientError("down")
    ).returns_value(0.88)
    service = _service(flaky_store, provider, fake_clock)

    for _ in range(2):
        rate = await service.get_rate(CallContext(), "USD", "EUR")
        assert (rate.value, rate.stale) == (0.85, True)
    assert breaker.state is CircuitState.OPEN

    rate = await service.get_rate(CallContext(), "USD", "EUR")
    assert (rate.value, rate.stale) == (0.85, True)
    assert scripted_provider.call_count == 2

    await asyncio.sleep(0.06)
    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert (rate.value, rate.stale) == (0.88, False)
    assert scripted_provider.call_count == 3
    assert breaker.state is CircuitState.CLOSED


async def test_same_base_and_target_touches_nothing(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    counter = OutcomeCounter()
    service = _service(flaky_store, scripted_provider, fake_clock, counter=counter)

    with pytest.raises(CurrencyMismatchError):
        await service.get_rate(CallContext(), "USD", "usd")

    assert flaky_store.reads == []
    assert scripted_provider.call_count == 0
    assert counter.count(RateOutcome.INVALID_INPUT) == 1


@pytest.mark.parametrize("base,target", [("US", "EUR"), ("USD", "EU1"), ("", "EUR")])
async def test_malformed_codes_are_invalid_input(
    flaky_store: FlakyStore,
    scripted_provider: ScriptedProvider,
    fake_clock: FakeClock,
    base: str,
    target: str,
) -> None:
    service = _service(flaky_store, scripted_provider, fake_clock)

    with pytest.raises(InvalidCurrencyCodeError):
        await service.get_rate(CallContext(), base, target)

    assert scripted_provider.call_count == 0


async def test_record_exactly_ttl_old_is_stale(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - W)
    scripted_provider.returns_value(0.9)
    service = _service(flaky_store, scripted_provider, fake_clock)

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert rate.value == 0.9
    assert scripted_provider.call_count == 1


async def test_non_positive_ttl_treats_everything_as_fresh(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(days=30))
    service = _service(flaky_store, scripted_provider, fake_clock, ttl=timedelta(0))

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert (rate.value, rate.stale) == (0.85, False)
    assert scripted_provider.call_count == 0


async def test_corrupt_record_surfaces_internal_error(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    flaky_store.inject(
        RateRecord(
            key="RATE#USD#EUR",
            base="USD",
            target="E1R",
            value=0.85,
            observed_at_epoch_seconds=int(NOW_0.timestamp()),
        )
    )
    service = _service(flaky_store, scripted_provider, fake_clock)

    with pytest.raises(CorruptRecordError):
        await service.get_rate(CallContext(), "USD", "EUR")

    assert scripted_provider.call_count == 0


async def test_record_from_the_future_is_corrupt(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 + timedelta(minutes=10))
    service = _service(flaky_store, scripted_provider, fake_clock)

    with pytest.raises(CorruptRecordError):
        await service.get_rate(CallContext(), "USD", "EUR")


async def test_clock_far_ahead_of_wall_time_still_serves_rates(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    fake_clock.current = datetime.now(UTC) + timedelta(days=365)
    scripted_provider.returns_value(0.86)
    service = _service(flaky_store, scripted_provider, fake_clock)

    fetched = await service.get_rate(CallContext(), "USD", "EUR")
    cached = await service.get_rate(CallContext(), "USD", "EUR")

    assert fetched.value == cached.value == 0.86
    assert scripted_provider.call_count == 1


async def test_upstream_miss_without_cache_reraises(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    scripted_provider.fails_with(ProviderUnavailableError("bad payload"))
    counter = OutcomeCounter()
    logger = FakeLogger()
    service = _service(
        flaky_store, scripted_provider, fake_clock, counter=counter, logger=logger
    )

    with pytest.raises(ProviderUnavailableError):
        await service.get_rate(CallContext(), "USD", "EUR")

    assert counter.count(RateOutcome.UPSTREAM_MISS) == 1
    assert "rate_unavailable" in logger.events
    assert flaky_store.reads == ["get", "get_stale"]


async def test_circuit_open_without_cache_reraises(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    scripted_provider.fails_with(CircuitOpenError("currency-api", retry_after=12.5))
    service = _service(flaky_store, scripted_provider, fake_clock)

    with pytest.raises(CircuitOpenError):
        await service.get_rate(CallContext(), "USD", "EUR")


async def test_store_read_failure_is_a_miss(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(minutes=5))
    flaky_store.fail_reads = True
    scripted_provider.returns_value(0.9)
    logger = FakeLogger()
    service = _service(flaky_store, scripted_provider, fake_clock, logger=logger)

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert rate.value == 0.9
    assert "rate_store_read_failed" in logger.events


async def test_store_write_failure_is_swallowed(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    flaky_store.fail_writes = True
    scripted_provider.returns_value(0.9)
    logger = FakeLogger()
    service = _service(flaky_store, scripted_provider, fake_clock, logger=logger)

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert rate.value == 0.9
    assert flaky_store.writes == ["RATE#USD#EUR"]
    assert "rate_write_failed" in logger.events


async def test_cancelled_request_falls_back_to_cache(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(hours=2))
    scripted_provider.fails_with(RequestCancelledError())
    service = _service(flaky_store, scripted_provider, fake_clock)

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert (rate.value, rate.stale) == (0.85, True)


async def test_expired_deadline_without_cache_raises(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    scripted_provider.fails_with(DeadlineExceededError())
    counter = OutcomeCounter()
    service = _service(flaky_store, scripted_provider, fake_clock, counter=counter)

    with pytest.raises(DeadlineExceededError):
        await service.get_rate(CallContext(), "USD", "EUR")

    assert counter.count(RateOutcome.UPSTREAM_MISS) == 1


async def test_write_back_skipped_when_context_done(
    flaky_store: FlakyStore, fake_clock: FakeClock
) -> None:
    ctx = CallContext()

    class CancellingProvider(ScriptedProvider):
        async def fetch_one(self, call_ctx, base, target):
            rate = await super().fetch_one(call_ctx, base, target)
            ctx.cancel()
            return rate

    provider = CancellingProvider(fake_clock).returns_value(0.9)
    logger = FakeLogger()
    service = _service(flaky_store, provider, fake_clock, logger=logger)

    rate = await service.get_rate(ctx, "USD", "EUR")

    assert rate.value == 0.9
    assert flaky_store.writes == []
    assert "rate_write_skipped" in logger.events


async def test_two_fresh_hits_are_identical(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(minutes=1))
    service = _service(flaky_store, scripted_provider, fake_clock)

    first = await service.get_rate(CallContext(), "USD", "EUR")
    second = await service.get_rate(CallContext(), "USD", "EUR")

    assert first == second
    assert scripted_provider.call_count == 0


async def test_get_all_rates_serves_fully_fresh_cache(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(minutes=10))
    await flaky_store.seed("USD", "GBP", 0.79, NOW_0 - timedelta(minutes=20))
    service = _service(flaky_store, scripted_provider, fake_clock)

    rates = await service.get_all_rates(CallContext(), "usd")

    assert [(str(r.target), r.value, r.stale) for r in rates] == [
        ("EUR", 0.85, False),
        ("GBP", 0.79, False),
    ]
    assert scripted_provider.call_count == 0


async def test_get_all_rates_refetches_when_any_rate_is_stale(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(minutes=10))
    await flaky_store.seed("USD", "CHF", 0.91, NOW_0 - timedelta(hours=3))
    scripted_provider.returns_values({"EUR": 0.86, "GBP": 0.8})
    service = _service(flaky_store, scripted_provider, fake_clock)

    rates = await service.get_all_rates(CallContext(), "USD")

    assert [(str(r.target), r.value) for r in rates] == [("EUR", 0.86), ("GBP", 0.8)]
    assert sorted(flaky_store.writes) == ["RATE#USD#EUR", "RATE#USD#GBP"]
    stored = await flaky_store.get_by_base(CallContext(), USD)
    assert [record.target for record in stored] == ["CHF", "EUR", "GBP"]


async def test_get_all_rates_falls_back_to_stale_cache(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(hours=2))
    await flaky_store.seed("USD", "GBP", 0.79, NOW_0 - timedelta(minutes=2))
    scripted_provider.fails_with(ProviderTransientError("down"))
    counter = OutcomeCounter()
    service = _service(flaky_store, scripted_provider, fake_clock, counter=counter)

    rates = await service.get_all_rates(CallContext(), "USD")

    assert [(str(r.target), r.stale) for r in rates] == [("EUR", True), ("GBP", True)]
    assert counter.count(RateOutcome.STALE_FALLBACK, "get_all_rates") == 1


async def test_get_all_rates_empty_upstream_returns_empty_list(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    scripted_provider.returns_values({})
    service = _service(flaky_store, scripted_provider, fake_clock)

    assert await service.get_all_rates(CallContext(), "USD") == []


async def test_get_all_rates_without_cache_reraises(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    service = _service(flaky_store, scripted_provider, fake_clock)

    with pytest.raises(ProviderTransientError):
        await service.get_all_rates(CallContext(), "USD")


async def test_get_all_rates_rejects_bad_base(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    counter = OutcomeCounter()
    service = _service(flaky_store, scripted_provider, fake_clock, counter=counter)

    with pytest.raises(InvalidCurrencyCodeError):
        await service.get_all_rates(CallContext(), "dollars")

    assert counter.totals()["invalid_input"] == 1
    assert flaky_store.reads == []


async def test_failing_listener_does_not_break_call(
    flaky_store: FlakyStore, scripted_provider: ScriptedProvider, fake_clock: FakeClock
) -> None:
    class BrokenListener:
        async def on_outcome(self, operation, outcome, base, target):
            raise RuntimeError("listener down")

    await flaky_store.seed("USD", "EUR", 0.85, NOW_0 - timedelta(minutes=1))
    logger = FakeLogger()
    service = RateService(
        flaky_store,
        scripted_provider,
        clock=fake_clock,
        listeners=[BrokenListener()],
        logger=logger,
    )

    rate = await service.get_rate(CallContext(), "USD", "EUR")

    assert rate.value == 0.85
    assert "rate_outcome_listener_failed" in logger.events
