from __future__ import annotations

import hmac
from collections.abc import Iterable

BEARER_PREFIX = "bearer "


def extract_api_key(x_api_key: str | None, authorization: str | None) -> str | None:
    """Return the key from ``X-API-Key`` or an ``Authorization: Bearer`` header."""
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    if authorization and authorization.lower().startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX) :].strip()
        return token or None
    return None


class ApiKeyAuthenticator:
    """Check presented keys against the configured set in constant time."""

    def __init__(self, keys: Iterable[str]) -> None:
        self._keys = tuple(key.encode() for key in keys if key)

    @property
    def enabled(self) -> bool:
        return bool(self._keys)

    def is_valid(self, presented: str) -> bool:
        candidate = presented.encode()
        matched = False
        for key in self._keys:
            if hmac.compare_digest(candidate, key):
                matched = True
        return matched
