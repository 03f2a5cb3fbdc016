"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from currenseen.api import errors
from currenseen.api.auth import ApiKeyAuthenticator
from currenseen.api.middleware import (
    request_context_middleware,
    security_headers_middleware,
)
from currenseen.api.rate_limit import TokenBucketRateLimiter
from currenseen.api.routes import health_router, router
from currenseen.circuit_breaker import CircuitBreaker, LoggingBreakerListener
from currenseen.clock import Clock, SystemClock
from currenseen.errors import CurrenseenError
from currenseen.health import make_breaker_check, make_store_check
from currenseen.logging import configure_structlog, log_info
from currenseen.provider import (
    BreakerGuardedProvider,
    CurrencyApiProvider,
    RateProvider,
    RetryingProvider,
    build_http_client,
)
from currenseen.service import OutcomeCounter, RateService
from currenseen.settings import ServiceSettings
from currenseen.store import RateStore, SqlRateStore

BREAKER_NAME = "currency-api"

_logger = structlog.get_logger(__name__)


def create_app(
    settings: ServiceSettings | None = None,
    *,
    store: RateStore | None = None,
    provider: RateProvider | None = None,
    clock: Clock | None = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Application factory.

    Args:
        settings: Settings override; defaults to ``ServiceSettings()`` from the
            environment.
        store: Store override. When omitted a ``SqlRateStore`` is opened on
            ``settings.database_url`` at startup and closed at shutdown.
        provider: Unguarded upstream override. When omitted the currency-api
            client with retries is built on a shared ``httpx.AsyncClient``.
            Either way the provider is placed behind the circuit breaker.
        clock: Clock override for freshness decisions.
        configure_logging: Whether to configure structlog from settings.
    """
    settings = settings or ServiceSettings()
    clock = clock or SystemClock()
    if configure_logging:
        configure_structlog(
            log_level=settings.log_level, log_format=settings.log_format
        )

    breaker = CircuitBreaker(
        BREAKER_NAME,
        config=settings.breaker_config(),
        listeners=[LoggingBreakerListener()],
    )
    outcome_counter = OutcomeCounter()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        http_client: httpx.AsyncClient | None = None
        owned_store: SqlRateStore | None = None
        app_store = store
        if app_store is None:
            owned_store = SqlRateStore.from_url(settings.database_url, clock=clock)
            await owned_store.initialize()
            app_store = owned_store

        upstream = provider
        if upstream is None:
            http_client = build_http_client(
                timeout_seconds=settings.provider_timeout_seconds,
                skip_tls_verify=settings.skip_tls_verify,
            )
            upstream = RetryingProvider(
                CurrencyApiProvider(
                    http_client,
                    base_urls=settings.provider_base_urls,
                    clock=clock,
                    timeout_seconds=settings.provider_timeout_seconds,
                ),
                policy=settings.retry_policy(),
            )

        app.state.service = RateService(
            app_store,
            BreakerGuardedProvider(upstream, breaker),
            clock=clock,
            cache_ttl=settings.cache_ttl,
            listeners=[outcome_counter],
        )
        app.state.health_checks = (
            make_store_check(app_store),
            make_breaker_check(breaker),
        )
        log_info(
            _logger,
            "service_started",
            cache_ttl_seconds=settings.cache_ttl_seconds,
            provider_base_urls=list(settings.provider_base_urls),
            api_key_auth=bool(settings.api_keys),
            rate_limit_enabled=settings.rate_limit_enabled,
        )
        if settings.skip_tls_verify:
            log_info(_logger, "tls_verification_disabled")
        try:
            yield
        finally:
            if http_client is not None:
                await http_client.aclose()
            if owned_store is not None:
                await owned_store.close()
            log_info(_logger, "service_stopped")

    app = FastAPI(title="currenseen", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.breaker = breaker
    app.state.outcome_counter = outcome_counter
    app.state.authenticator = ApiKeyAuthenticator(settings.api_keys)
    app.state.rate_limiter = (
        TokenBucketRateLimiter(
            requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_size=settings.rate_limit_burst_size,
        )
        if settings.rate_limit_enabled
        else None
    )

    # Registration order matters: the last middleware added runs outermost.
    app.middleware("http")(request_context_middleware)
    app.middleware("http")(security_headers_middleware)

    app.add_exception_handler(CurrenseenError, errors.currenseen_error_handler)
    app.add_exception_handler(errors.ApiError, errors.api_error_handler)
    app.add_exception_handler(StarletteHTTPException, errors.http_error_handler)

    app.include_router(router)
    app.include_router(health_router)
    return app
