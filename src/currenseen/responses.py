"""Transport DTOs for the public rate surface."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from currenseen.rates.models import Rate


class RateResponse(BaseModel):
    """One exchange rate as returned to clients."""

    model_config = ConfigDict(frozen=True)

    base: str
    target: str
    rate: float
    timestamp: datetime
    stale: bool = False

    @classmethod
    def from_rate(cls, rate: Rate) -> RateResponse:
        return cls(
            base=str(rate.base),
            target=str(rate.target),
            rate=rate.value,
            timestamp=rate.observed_at,
            stale=rate.stale,
        )


class RatesResponse(BaseModel):
    """Every rate for one base currency keyed by target code.

    ``timestamp`` is the newest observation in the set and ``stale`` is true
    when any member is stale. An empty set carries ``timestamp=None``.
    """

    model_config = ConfigDict(frozen=True)

    base: str
    rates: dict[str, RateResponse]
    timestamp: datetime | None
    stale: bool = False

    @classmethod
    def from_rates(cls, base: str, rates: Sequence[Rate]) -> RatesResponse:
        items = {str(rate.target): RateResponse.from_rate(rate) for rate in rates}
        return cls(
            base=base,
            rates=items,
            timestamp=max((rate.observed_at for rate in rates), default=None),
            stale=any(rate.stale for rate in rates),
        )


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, str]
    outcomes: dict[str, int]
    timestamp: datetime


class ErrorResponse(BaseModel):
    error: str
    code: str | None = None
    timestamp: datetime
