"""Client for the public currency-api JSON feed."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Protocol

import httpx
import structlog

from currenseen.clock import Clock, SystemClock
from currenseen.context import CallContext
from currenseen.errors import ProviderTransientError, ProviderUnavailableError
from currenseen.logging import StructuredLogger, log_error, log_info, log_warning
from currenseen.provider.constants import (
    DEFAULT_BASE_URLS,
    DEFAULT_TIMEOUT_SECONDS,
    RATES_PATH_TEMPLATE,
)
from currenseen.provider.parsing import (
    extract_rates_object,
    parse_all_rates,
    parse_single_rate,
)
from currenseen.rates.models import CurrencyCode, Rate, truncate_to_seconds
from currenseen.retry import RETRY_STATUSES


class RateProvider(Protocol):
    """Narrow upstream contract consumed by the rate service."""

    async def fetch_one(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> Rate:
        """Fetch one rate for a pre-validated pair."""

    async def fetch_all(self, ctx: CallContext, base: CurrencyCode) -> list[Rate]:
        """Fetch every rate quoted against ``base``."""


class CurrencyApiProvider:
    """Fetch rates with one GET per base URL, trying each URL in order.

    A URL is abandoned for the next one on any transport failure, non-200
    status, undecodable body or payload without the base key. When every URL
    fails the last error is raised; it is a ``ProviderTransientError`` only when
    that last failure was a timeout, an I/O error or a 5xx status. Each GET,
    body included, is cut off after ``timeout_seconds`` whatever the context
    deadline.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_urls: Sequence[str] = DEFAULT_BASE_URLS,
        clock: Clock | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        logger: StructuredLogger | None = None,
    ) -> None:
        urls = tuple(url.rstrip("/") for url in base_urls if url.strip())
        if not urls:
            raise ValueError("at least one provider base URL is required")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._http = http_client
        self._base_urls = urls
        self._clock = SystemClock() if clock is None else clock
        self._timeout_seconds = timeout_seconds
        self._timeout = httpx.Timeout(timeout_seconds)
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def base_urls(self) -> tuple[str, ...]:
        return self._base_urls

    async def fetch_one(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> Rate:
        rates = await self._fetch_rates_object(ctx, base)
        observed_at = truncate_to_seconds(self._clock.now())
        return parse_single_rate(rates, base, target, observed_at)

    async def fetch_all(self, ctx: CallContext, base: CurrencyCode) -> list[Rate]:
        rates = await self._fetch_rates_object(ctx, base)
        observed_at = truncate_to_seconds(self._clock.now())
        return parse_all_rates(rates, base, observed_at)

    async def _fetch_rates_object(
        self, ctx: CallContext, base: CurrencyCode
    ) -> Mapping[str, object]:
        last_error: ProviderUnavailableError | None = None
        for attempt, base_url in enumerate(self._base_urls, start=1):
            ctx.raise_if_done()
            try:
                rates = await self._fetch_from(ctx, base_url, base)
            except ProviderUnavailableError as exc:
                last_error = exc
                log_warning(
                    self._logger,
                    "provider_endpoint_failed",
                    url=base_url,
                    attempt=attempt,
                    total_attempts=len(self._base_urls),
                    base=str(base),
                    error=str(exc),
                    http_status=exc.http_status,
                )
                continue
            log_info(
                self._logger,
                "provider_fetch_succeeded",
                url=base_url,
                base=str(base),
                rate_count=len(rates),
            )
            return rates

        assert last_error is not None
        log_error(
            self._logger,
            "provider_endpoints_exhausted",
            base=str(base),
            error=str(last_error),
        )
        raise last_error

    async def _fetch_from(
        self, ctx: CallContext, base_url: str, base: CurrencyCode
    ) -> Mapping[str, object]:
        url = base_url + RATES_PATH_TEMPLATE.format(base=base.lower())
        try:
            async with asyncio.timeout(self._timeout_seconds) as attempt_scope:
                response = await ctx.guard(self._http.get(url, timeout=self._timeout))
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"upstream request timed out: {url}") from exc
        except TimeoutError as exc:
            if not attempt_scope.expired():
                raise
            raise ProviderTransientError(
                f"upstream request exceeded {self._timeout_seconds}s: {url}"
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(
                f"upstream transport error: {exc.__class__.__name__}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                f"upstream request failed: {exc.__class__.__name__}"
            ) from exc

        status = response.status_code
        if status != httpx.codes.OK:
            message = f"upstream returned HTTP {status}"
            if status in RETRY_STATUSES:
                raise ProviderTransientError(message, http_status=status)
            raise ProviderUnavailableError(message, http_status=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError("upstream body is not valid JSON") from exc
        return extract_rates_object(payload, base)
