from currenseen.provider.client import CurrencyApiProvider, RateProvider
from currenseen.provider.http import build_http_client, build_ssl_context
from currenseen.provider.wrappers import BreakerGuardedProvider, RetryingProvider

__all__ = [
    "BreakerGuardedProvider",
    "CurrencyApiProvider",
    "RateProvider",
    "RetryingProvider",
    "build_http_client",
    "build_ssl_context",
]
