"""Rate and health endpoints plus their request-scoped dependencies."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import suppress
from datetime import UTC, datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette import status

from currenseen.api.auth import ApiKeyAuthenticator, extract_api_key
from currenseen.api.errors import API_KEY_MISSING, RATE_LIMITED, UNAUTHORIZED, ApiError
from currenseen.api.rate_limit import RETRY_AFTER_SECONDS, TokenBucketRateLimiter
from currenseen.context import CallContext
from currenseen.health import evaluate_health
from currenseen.logging import log_warning, mask_api_key
from currenseen.rates.models import CurrencyCode
from currenseen.responses import HealthResponse, RateResponse, RatesResponse
from currenseen.service import RateService

DISCONNECT_POLL_SECONDS = 0.1

_logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/rates", tags=["rates"])
health_router = APIRouter(tags=["health"])


def get_service(request: Request) -> RateService:
    return request.app.state.service


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def get_call_context(request: Request) -> AsyncIterator[CallContext]:
    """Per-request context: deadline from settings, cancelled on client disconnect."""
    cancel_event = asyncio.Event()
    ctx = CallContext.with_timeout(
        request.app.state.settings.request_timeout_seconds,
        cancel_event=cancel_event,
    )
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        yield ctx
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher


async def require_api_key(
    request: Request,
    x_api_key: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> str | None:
    authenticator: ApiKeyAuthenticator = request.app.state.authenticator
    if not authenticator.enabled:
        return None
    presented = extract_api_key(x_api_key, authorization)
    if presented is None:
        raise ApiError(API_KEY_MISSING)
    if not authenticator.is_valid(presented):
        log_warning(_logger, "api_key_rejected", api_key=mask_api_key(presented))
        raise ApiError(UNAUTHORIZED)
    return presented


async def enforce_rate_limit(
    request: Request,
    api_key: Annotated[str | None, Depends(require_api_key)],
) -> None:
    limiter: TokenBucketRateLimiter | None = request.app.state.rate_limiter
    if limiter is None:
        return
    client_key = api_key or (request.client.host if request.client else "unknown")
    if not limiter.allow(client_key):
        log_warning(
            _logger,
            "rate_limit_exceeded",
            client=mask_api_key(api_key) if api_key else client_key,
        )
        raise ApiError(RATE_LIMITED, headers={"Retry-After": str(RETRY_AFTER_SECONDS)})


@router.get(
    "/{base}/{target}",
    response_model=RateResponse,
    summary="Exchange rate for one currency pair",
    dependencies=[Depends(enforce_rate_limit)],
)
async def get_rate(
    base: str,
    target: str,
    service: Annotated[RateService, Depends(get_service)],
    ctx: Annotated[CallContext, Depends(get_call_context)],
) -> RateResponse:
    structlog.contextvars.bind_contextvars(base=base, target=target)
    rate = await service.get_rate(ctx, base, target)
    return RateResponse.from_rate(rate)


@router.get(
    "/{base}",
    response_model=RatesResponse,
    summary="Every exchange rate for one base currency",
    dependencies=[Depends(enforce_rate_limit)],
)
async def get_all_rates(
    base: str,
    service: Annotated[RateService, Depends(get_service)],
    ctx: Annotated[CallContext, Depends(get_call_context)],
) -> RatesResponse:
    structlog.contextvars.bind_contextvars(base=base)
    rates = await service.get_all_rates(ctx, base)
    return RatesResponse.from_rates(str(CurrencyCode(base)), rates)


@health_router.get("/health", response_model=HealthResponse, summary="Service health")
async def health(request: Request) -> JSONResponse:
    snapshot = await evaluate_health(request.app.state.health_checks)
    body = HealthResponse(
        status=snapshot.status,
        checks=snapshot.checks(),
        outcomes=request.app.state.outcome_counter.totals(),
        timestamp=datetime.fromtimestamp(snapshot.checked_at, UTC),
    )
    status_code = (
        status.HTTP_200_OK if snapshot.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
