from __future__ import annotations

import httpx
import pytest
import pytest_asyncio
from pytest_httpx import HTTPXMock

from currenseen.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from currenseen.context import CallContext
from currenseen.errors import (
    CurrencyMismatchError,
    DeadlineExceededError,
    ProviderTransientError,
    ProviderUnavailableError,
    RequestCancelledError,
)
from currenseen.provider import (
    BreakerGuardedProvider,
    CurrencyApiProvider,
    RetryingProvider,
)
from currenseen.rates.models import CurrencyCode
from currenseen.retry import RetryBackoffPolicy
from tests.currenseen.support.fakes import FakeLogger, FakeMonotonic, ScriptedProvider

pytestmark = pytest.mark.asyncio

USD = CurrencyCode("USD")
EUR = CurrencyCode("EUR")
NO_WAIT = RetryBackoffPolicy(attempts=3, initial_seconds=0, max_seconds=0)
UPSTREAM = "https://primary.test/v1"
UPSTREAM_USD_URL = f"{UPSTREAM}/currencies/usd.json"


def _breaker(monotonic: FakeMonotonic, *, threshold: int = 2) -> CircuitBreaker:
    return CircuitBreaker(
        "currency-api",
        config=CircuitBreakerConfig(failure_threshold=threshold, cooldown=30.0),
        monotonic=monotonic,
    )


async def test_retrying_provider_retries_transient_then_succeeds(
    scripted_provider: ScriptedProvider, fake_logger: FakeLogger
) -> None:
    scripted_provider.fails_with(ProviderTransientError("boom")).returns_value(0.9)
    provider = RetryingProvider(scripted_provider, policy=NO_WAIT, logger=fake_logger)

    rate = await provider.fetch_one(CallContext(), USD, EUR)

    assert rate.value == 0.9
    assert scripted_provider.call_count == 2
    assert fake_logger.events == ["provider_retry_scheduled"]
    assert fake_logger.calls[0][2]["attempt"] == 1


async def test_retrying_provider_gives_up_after_policy_attempts(
    scripted_provider: ScriptedProvider, fake_logger: FakeLogger
) -> None:
    provider = RetryingProvider(scripted_provider, policy=NO_WAIT, logger=fake_logger)

    with pytest.raises(ProviderTransientError):
        await provider.fetch_all(CallContext(), USD)

    assert scripted_provider.call_count == 3
    assert fake_logger.events.count("provider_retry_scheduled") == 2


async def test_retrying_provider_does_not_retry_permanent_errors(
    scripted_provider: ScriptedProvider, fake_logger: FakeLogger
) -> None:
    scripted_provider.fails_with(ProviderUnavailableError("bad payload"))
    provider = RetryingProvider(scripted_provider, policy=NO_WAIT, logger=fake_logger)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await provider.fetch_one(CallContext(), USD, EUR)

    assert not isinstance(exc_info.value, ProviderTransientError)
    assert scripted_provider.call_count == 1


async def test_retrying_provider_backoff_respects_deadline(
    scripted_provider: ScriptedProvider, fake_logger: FakeLogger
) -> None:
    policy = RetryBackoffPolicy(attempts=5, initial_seconds=1.0, max_seconds=5.0)
    provider = RetryingProvider(scripted_provider, policy=policy, logger=fake_logger)

    with pytest.raises(DeadlineExceededError):
        await provider.fetch_one(CallContext.with_timeout(0.05), USD, EUR)

    assert scripted_provider.call_count == 1


async def test_retrying_provider_stops_when_cancelled(
    scripted_provider: ScriptedProvider, fake_logger: FakeLogger
) -> None:
    ctx = CallContext()
    ctx.cancel()
    provider = RetryingProvider(scripted_provider, policy=NO_WAIT, logger=fake_logger)

    with pytest.raises(RequestCancelledError):
        await provider.fetch_one(ctx, USD, EUR)

    assert scripted_provider.call_count == 0


@pytest_asyncio.fixture
async def upstream_client():
    async with httpx.AsyncClient() as client:
        yield client


def _retrying_upstream(client: httpx.AsyncClient, logger: FakeLogger) -> RetryingProvider:
    upstream = CurrencyApiProvider(
        client, base_urls=(UPSTREAM,), timeout_seconds=1.0, logger=logger
    )
    return RetryingProvider(upstream, policy=NO_WAIT, logger=logger)


@pytest.mark.parametrize(
    "response",
    [
        {"status_code": 400},
        {"status_code": 404},
        {"status_code": 408},
        {"status_code": 429},
        {"status_code": 200, "content": b"not json"},
        {"status_code": 200, "json": {"date": "2024-01-15", "eur": {"usd": 1.1}}},
    ],
    ids=["400", "404", "408", "429", "bad-json", "wrong-base"],
)
async def test_upstream_client_errors_and_bad_content_are_fetched_once(
    httpx_mock: HTTPXMock,
    upstream_client: httpx.AsyncClient,
    fake_logger: FakeLogger,
    response: dict[str, object],
) -> None:
    httpx_mock.add_response(url=UPSTREAM_USD_URL, **response)
    provider = _retrying_upstream(upstream_client, fake_logger)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await provider.fetch_one(CallContext(), USD, EUR)

    assert not isinstance(exc_info.value, ProviderTransientError)
    assert len(httpx_mock.get_requests()) == 1
    assert "provider_retry_scheduled" not in fake_logger.events


async def test_upstream_server_errors_are_retried_up_to_policy_attempts(
    httpx_mock: HTTPXMock, upstream_client: httpx.AsyncClient, fake_logger: FakeLogger
) -> None:
    for _ in range(NO_WAIT.attempts):
        httpx_mock.add_response(url=UPSTREAM_USD_URL, status_code=503)
    provider = _retrying_upstream(upstream_client, fake_logger)

    with pytest.raises(ProviderTransientError):
        await provider.fetch_one(CallContext(), USD, EUR)

    assert len(httpx_mock.get_requests()) == NO_WAIT.attempts


async def test_guard_records_success_and_failure(
    scripted_provider: ScriptedProvider, fake_monotonic: FakeMonotonic
) -> None:
    breaker = _breaker(fake_monotonic)
    provider = BreakerGuardedProvider(scripted_provider, breaker, monotonic=fake_monotonic)
    scripted_provider.fails_with(ProviderUnavailableError("down")).returns_value(0.9)

    with pytest.raises(ProviderUnavailableError):
        await provider.fetch_one(CallContext(), USD, EUR)
    assert breaker.snapshot().failure_count == 1

    await provider.fetch_one(CallContext(), USD, EUR)
    assert breaker.snapshot().failure_count == 0
    assert breaker.state is CircuitState.CLOSED


async def test_guard_rejects_without_calling_upstream_when_open(
    scripted_provider: ScriptedProvider, fake_monotonic: FakeMonotonic
) -> None:
    breaker = _breaker(fake_monotonic)
    provider = BreakerGuardedProvider(scripted_provider, breaker, monotonic=fake_monotonic)

    for _ in range(2):
        with pytest.raises(ProviderTransientError):
            await provider.fetch_all(CallContext(), USD)
    assert breaker.state is CircuitState.OPEN

    fake_monotonic.advance(10.0)
    with pytest.raises(CircuitOpenError) as exc_info:
        await provider.fetch_one(CallContext(), USD, EUR)

    assert scripted_provider.call_count == 2
    assert exc_info.value.breaker_name == "currency-api"
    assert exc_info.value.retry_after == pytest.approx(20.0)


async def test_guard_probes_after_cooldown_and_closes(
    scripted_provider: ScriptedProvider, fake_monotonic: FakeMonotonic
) -> None:
    breaker = _breaker(fake_monotonic, threshold=1)
    provider = BreakerGuardedProvider(scripted_provider, breaker, monotonic=fake_monotonic)
    scripted_provider.fails_with(ProviderTransientError("down")).returns_value(0.9)

    with pytest.raises(ProviderTransientError):
        await provider.fetch_one(CallContext(), USD, EUR)
    fake_monotonic.advance(30.0)

    rate = await provider.fetch_one(CallContext(), USD, EUR)

    assert rate.value == 0.9
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.parametrize(
    "error",
    [
        RequestCancelledError(),
        DeadlineExceededError(),
        CurrencyMismatchError("USD"),
    ],
)
async def test_guard_does_not_count_context_or_input_errors(
    scripted_provider: ScriptedProvider,
    fake_monotonic: FakeMonotonic,
    error: Exception,
) -> None:
    breaker = _breaker(fake_monotonic, threshold=1)
    provider = BreakerGuardedProvider(scripted_provider, breaker, monotonic=fake_monotonic)
    scripted_provider.fails_with(error)

    with pytest.raises(type(error)):
        await provider.fetch_one(CallContext(), USD, EUR)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot().failure_count == 0


async def test_guard_checks_context_before_admitting(
    scripted_provider: ScriptedProvider, fake_monotonic: FakeMonotonic
) -> None:
    breaker = _breaker(fake_monotonic)
    provider = BreakerGuardedProvider(scripted_provider, breaker, monotonic=fake_monotonic)
    ctx = CallContext()
    ctx.cancel()

    with pytest.raises(RequestCancelledError):
        await provider.fetch_one(ctx, USD, EUR)

    assert scripted_provider.call_count == 0
