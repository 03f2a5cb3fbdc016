"""HTTP middleware: request IDs, access logging and security headers."""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response

from currenseen.api.errors import unhandled_error_response
from currenseen.logging import log_info

REQUEST_ID_HEADER = "X-Request-ID"
SECURITY_HEADERS: dict[str, str] = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Content-Security-Policy": "default-src 'self'",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

CallNext = Callable[[Request], Awaitable[Response]]
_logger = structlog.get_logger("currenseen.api.request")


def resolve_request_id(request: Request) -> str:
    """Reuse the caller's ``X-Request-ID`` or generate a new hex identifier."""
    presented = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if presented:
        return presented[:128]
    return uuid.uuid4().hex


async def request_context_middleware(request: Request, call_next: CallNext) -> Response:
    """Bind the request ID into the log context and echo it on the response."""
    request_id = resolve_request_id(request)
    request.state.request_id = request_id
    start = time.perf_counter()
    with structlog.contextvars.bound_contextvars(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as exc:
            response = unhandled_error_response(request, exc)
        log_info(
            _logger,
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def security_headers_middleware(request: Request, call_next: CallNext) -> Response:
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response
