"""Parsing of the upstream ``{"date": ..., "<base>": {"<target>": n}}`` payload."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime

from currenseen.errors import InvalidInputError, ProviderUnavailableError
from currenseen.provider.constants import DATE_FIELD
from currenseen.rates.models import CurrencyCode, Rate


def extract_rates_object(payload: object, base: CurrencyCode) -> Mapping[str, object]:
    """Return the rates mapping for ``base`` from a decoded upstream payload.

    Raises:
        ProviderUnavailableError: The payload is not an object, carries more
            than one non-``date`` key, or lacks the lowercased base key.
    """
    if not isinstance(payload, Mapping):
        raise ProviderUnavailableError("upstream payload is not a JSON object")

    rate_keys = [key for key in payload if key != DATE_FIELD]
    if len(rate_keys) > 1:
        raise ProviderUnavailableError(
            f"upstream payload has unexpected top-level keys: {sorted(rate_keys)}"
        )

    base_key = base.lower()
    rates = payload.get(base_key)
    if rates is None:
        raise ProviderUnavailableError(f"upstream payload is missing base {base_key!r}")
    if not isinstance(rates, Mapping):
        raise ProviderUnavailableError(f"upstream rates for {base_key!r} are not an object")
    return rates


def _coerce_value(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def parse_single_rate(
    rates: Mapping[str, object],
    base: CurrencyCode,
    target: CurrencyCode,
    observed_at: datetime,
) -> Rate:
    """Build the ``base``/``target`` rate; absence or a bad value is an upstream failure."""
    target_key = target.lower()
    if target_key not in rates:
        raise ProviderUnavailableError(f"upstream has no rate for {base}/{target}")
    value = _coerce_value(rates[target_key])
    if value is None:
        raise ProviderUnavailableError(f"upstream rate for {base}/{target} is invalid")
    return Rate(base=base, target=target, value=value, observed_at=observed_at)


def parse_all_rates(
    rates: Mapping[str, object],
    base: CurrencyCode,
    observed_at: datetime,
) -> list[Rate]:
    """Build every valid rate for ``base``, silently skipping unusable entries."""
    parsed: list[Rate] = []
    for raw_target, raw_value in rates.items():
        value = _coerce_value(raw_value)
        if value is None:
            continue
        try:
            target = CurrencyCode(raw_target)
        except InvalidInputError:
            continue
        if target == base:
            continue
        parsed.append(Rate(base=base, target=target, value=value, observed_at=observed_at))
    return parsed
