from __future__ import annotations

import ssl

import httpx

from currenseen.provider.constants import DEFAULT_TIMEOUT_SECONDS, USER_AGENT


def build_ssl_context(*, skip_tls_verify: bool = False) -> ssl.SSLContext:
    """Build a client TLS context requiring TLS 1.2 or newer.

    ``skip_tls_verify`` disables certificate and hostname checks and is meant
    for local development only.
    """
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if skip_tls_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def build_http_client(
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    skip_tls_verify: bool = False,
) -> httpx.AsyncClient:
    """Build the shared upstream client.

    ``timeout_seconds`` limits each connect, read, write and pool phase. The
    provider bounds the whole request separately.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        verify=build_ssl_context(skip_tls_verify=skip_tls_verify),
        headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        follow_redirects=True,
    )
