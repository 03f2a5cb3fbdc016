"""Domain records for exchange rates and their persisted store image."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from currenseen.errors import (
    CurrencyMismatchError,
    InvalidCurrencyCodeError,
    InvalidRateError,
)

MAX_CLOCK_SKEW = timedelta(minutes=5)
RECORD_KEY_PREFIX = "RATE"
_CODE_PATTERN = re.compile(r"[A-Za-z]{3}", re.ASCII)


class CurrencyCode(str):
    """Three-letter uppercase currency identifier.

    Construction trims whitespace, upper-cases and rejects anything that is not
    exactly three ASCII letters. Equality and hashing are plain ``str`` ones, so
    a code only matches the normalized spelling: wrap raw input in
    ``CurrencyCode`` before comparing it or using it as a key.
    """

    __slots__ = ()

    def __new__(cls, value: object) -> CurrencyCode:
        if isinstance(value, CurrencyCode):
            return value
        if not isinstance(value, str):
            raise InvalidCurrencyCodeError(value)
        normalized = value.strip()
        if not _CODE_PATTERN.fullmatch(normalized):
            raise InvalidCurrencyCodeError(value)
        return super().__new__(cls, normalized.upper())

    def __repr__(self) -> str:
        return f"CurrencyCode({str.__str__(self)!r})"


def record_key(base: CurrencyCode, target: CurrencyCode) -> str:
    """Build the composite store key ``RATE#{BASE}#{TARGET}``."""
    return f"{RECORD_KEY_PREFIX}#{base}#{target}"


def truncate_to_seconds(instant: datetime) -> datetime:
    """Drop sub-second precision so the instant survives the store round-trip."""
    return instant.replace(microsecond=0)


@dataclass(frozen=True, slots=True)
class Rate:
    """One observed exchange rate.

    Attributes:
        base: Currency being priced.
        target: Currency the price is expressed in.
        value: Units of ``target`` per unit of ``base``.
        observed_at: When the rate was fetched from the upstream.
        stale: Set only by the rate service when serving a fallback.
    """

    base: CurrencyCode
    target: CurrencyCode
    value: float
    observed_at: datetime
    stale: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", CurrencyCode(self.base))
        object.__setattr__(self, "target", CurrencyCode(self.target))
        if self.base == self.target:
            raise CurrencyMismatchError(self.base)

        if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
            raise InvalidRateError(f"rate must be a number, got {self.value!r}")
        value = float(self.value)
        if not math.isfinite(value) or value <= 0:
            raise InvalidRateError(f"rate must be positive and finite, got {value!r}")
        object.__setattr__(self, "value", value)

        observed_at = self.observed_at
        if not isinstance(observed_at, datetime) or observed_at.tzinfo is None:
            raise InvalidRateError("observed_at must be a timezone-aware datetime")
        if observed_at.timestamp() <= 0:
            raise InvalidRateError("observed_at must be set")

    def check_not_future(self, now: datetime) -> None:
        """Reject an ``observed_at`` more than ``MAX_CLOCK_SKEW`` past ``now``."""
        if self.observed_at > now + MAX_CLOCK_SKEW:
            raise InvalidRateError(
                f"observed_at {self.observed_at.isoformat()} is in the future"
            )

    def age(self, now: datetime) -> timedelta:
        return now - self.observed_at

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        """Return true when ``now - observed_at < ttl``; ``ttl <= 0`` never expires."""
        if ttl <= timedelta(0):
            return True
        return self.age(now) < ttl

    def as_stale(self) -> Rate:
        """Return a copy tagged ``stale=True``; the original is left untouched."""
        return replace(self, stale=True)


@dataclass(frozen=True, slots=True)
class RateRecord:
    """Persisted image of a ``Rate``.

    ``store_expiry_epoch_seconds`` is an advisory eviction hint for the store;
    freshness is always judged from ``observed_at_epoch_seconds``.
    """

    key: str
    base: str
    target: str
    value: float
    observed_at_epoch_seconds: int
    stale: bool = False
    store_expiry_epoch_seconds: int | None = None

    @classmethod
    def from_rate(
        cls,
        rate: Rate,
        *,
        store_expiry_epoch_seconds: int | None = None,
    ) -> RateRecord:
        return cls(
            key=record_key(rate.base, rate.target),
            base=str(rate.base),
            target=str(rate.target),
            value=rate.value,
            observed_at_epoch_seconds=int(rate.observed_at.timestamp()),
            stale=rate.stale,
            store_expiry_epoch_seconds=store_expiry_epoch_seconds,
        )

    def to_rate(self) -> Rate:
        """Rebuild the domain rate; raises ``InvalidInputError`` on corruption."""
        return Rate(
            base=CurrencyCode(self.base),
            target=CurrencyCode(self.target),
            value=self.value,
            observed_at=datetime.fromtimestamp(self.observed_at_epoch_seconds, UTC),
            stale=self.stale,
        )

    def is_expired(self, now_epoch_seconds: float) -> bool:
        expiry = self.store_expiry_epoch_seconds
        return expiry is not None and now_epoch_seconds >= expiry

    def to_item(self) -> dict[str, Any]:
        """Serialize to the wire item shape (``PK``, ``Base``, ``Rate``, ...)."""
        item: dict[str, Any] = {
            "PK": self.key,
            "Base": self.base,
            "Target": self.target,
            "Rate": self.value,
            "Timestamp": self.observed_at_epoch_seconds,
            "Stale": self.stale,
        }
        if self.store_expiry_epoch_seconds is not None:
            item["ttl"] = self.store_expiry_epoch_seconds
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> RateRecord:
        expiry = item.get("ttl")
        return cls(
            key=str(item["PK"]),
            base=str(item["Base"]),
            target=str(item["Target"]),
            value=float(item["Rate"]),
            observed_at_epoch_seconds=int(item["Timestamp"]),
            stale=bool(item.get("Stale", False)),
            store_expiry_epoch_seconds=None if expiry is None else int(expiry),
        )
