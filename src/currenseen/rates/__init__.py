from currenseen.rates.models import (
    MAX_CLOCK_SKEW,
    CurrencyCode,
    Rate,
    RateRecord,
    record_key,
)

__all__ = [
    "MAX_CLOCK_SKEW",
    "CurrencyCode",
    "Rate",
    "RateRecord",
    "record_key",
]
