from __future__ import annotations

DEFAULT_BASE_URLS: tuple[str, ...] = (
    "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1",
    "https://latest.currency-api.pages.dev/v1",
)
RATES_PATH_TEMPLATE = "/currencies/{base}.json"
DATE_FIELD = "date"
DEFAULT_TIMEOUT_SECONDS = 10.0
USER_AGENT = "currenseen/0.1"
