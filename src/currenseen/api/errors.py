"""Mapping from core errors to HTTP responses with stable client messages."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from http import HTTPStatus

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException

from currenseen.circuit_breaker import CircuitOpenError
from currenseen.errors import CurrencyMismatchError, CurrenseenError, ErrorKind
from currenseen.logging import log_exception, log_warning
from currenseen.responses import ErrorResponse

CODE_INVALID_CURRENCY = "INVALID_CURRENCY_CODE"
CODE_CURRENCY_MISMATCH = "CURRENCY_CODE_MISMATCH"
CODE_RATE_NOT_FOUND = "RATE_NOT_FOUND"
CODE_CIRCUIT_OPEN = "CIRCUIT_BREAKER_OPEN"
CODE_REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
CODE_INTERNAL = "INTERNAL_ERROR"
CODE_UNAUTHORIZED = "UNAUTHORIZED"
CODE_API_KEY_MISSING = "API_KEY_MISSING"
CODE_RATE_LIMITED = "RATE_LIMIT_EXCEEDED"
CODE_NOT_FOUND = "NOT_FOUND"

MESSAGE_INVALID_CURRENCY = "Invalid currency code provided"
MESSAGE_CURRENCY_MISMATCH = "Base and target currencies cannot be the same"
MESSAGE_RATE_NOT_FOUND = "Exchange rate not found"
MESSAGE_UNAVAILABLE = "Service temporarily unavailable"
MESSAGE_TIMEOUT = "Request timeout"
MESSAGE_RATE_LIMITED = "Rate limit exceeded"
MESSAGE_UNAUTHORIZED = "Unauthorized access"
MESSAGE_API_KEY_REQUIRED = "API key required"
MESSAGE_INTERNAL = "An error occurred processing your request"

_logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ErrorMapping:
    status_code: int
    code: str
    message: str


class ApiError(Exception):
    """Raised by front-end checks (auth, rate limiting) to short-circuit a request."""

    def __init__(
        self,
        mapping: ErrorMapping,
        *,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(mapping.message)
        self.mapping = mapping
        self.headers = headers or {}


UNAUTHORIZED = ErrorMapping(status.HTTP_401_UNAUTHORIZED, CODE_UNAUTHORIZED, MESSAGE_UNAUTHORIZED)
API_KEY_MISSING = ErrorMapping(
    status.HTTP_401_UNAUTHORIZED, CODE_API_KEY_MISSING, MESSAGE_API_KEY_REQUIRED
)
RATE_LIMITED = ErrorMapping(
    status.HTTP_429_TOO_MANY_REQUESTS, CODE_RATE_LIMITED, MESSAGE_RATE_LIMITED
)
INTERNAL = ErrorMapping(
    status.HTTP_500_INTERNAL_SERVER_ERROR, CODE_INTERNAL, MESSAGE_INTERNAL
)

_KIND_MAPPINGS: dict[ErrorKind, ErrorMapping] = {
    ErrorKind.INVALID_INPUT: ErrorMapping(
        status.HTTP_400_BAD_REQUEST, CODE_INVALID_CURRENCY, MESSAGE_INVALID_CURRENCY
    ),
    ErrorKind.NOT_FOUND: ErrorMapping(
        status.HTTP_404_NOT_FOUND, CODE_RATE_NOT_FOUND, MESSAGE_RATE_NOT_FOUND
    ),
    ErrorKind.CIRCUIT_OPEN: ErrorMapping(
        status.HTTP_503_SERVICE_UNAVAILABLE, CODE_CIRCUIT_OPEN, MESSAGE_UNAVAILABLE
    ),
    ErrorKind.CANCELLED: ErrorMapping(
        status.HTTP_408_REQUEST_TIMEOUT, CODE_REQUEST_TIMEOUT, MESSAGE_TIMEOUT
    ),
    ErrorKind.DEADLINE_EXCEEDED: ErrorMapping(
        status.HTTP_408_REQUEST_TIMEOUT, CODE_REQUEST_TIMEOUT, MESSAGE_TIMEOUT
    ),
    ErrorKind.PROVIDER_UNAVAILABLE: INTERNAL,
    ErrorKind.INTERNAL: INTERNAL,
}


def map_error(exc: CurrenseenError) -> ErrorMapping:
    """Return the status code, client code and client message for an error."""
    if isinstance(exc, CurrencyMismatchError):
        return ErrorMapping(
            status.HTTP_400_BAD_REQUEST, CODE_CURRENCY_MISMATCH, MESSAGE_CURRENCY_MISMATCH
        )
    return _KIND_MAPPINGS.get(exc.kind, INTERNAL)


def error_response(
    mapping: ErrorMapping,
    *,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=mapping.message,
        code=mapping.code,
        timestamp=datetime.now(UTC),
    )
    return JSONResponse(
        status_code=mapping.status_code,
        content=body.model_dump(mode="json"),
        headers=headers,
    )


async def currenseen_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, CurrenseenError)
    mapping = map_error(exc)
    headers: dict[str, str] = {}
    if isinstance(exc, CircuitOpenError):
        headers["Retry-After"] = str(max(math.ceil(exc.retry_after), 1))
    if mapping.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        log_warning(
            _logger,
            "request_failed",
            path=request.url.path,
            error_kind=str(exc.kind),
            error_type=exc.__class__.__name__,
            error=str(exc),
        )
    return error_response(mapping, headers=headers)


async def api_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ApiError)
    return error_response(exc.mapping, headers=exc.headers)


async def http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, StarletteHTTPException)
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        mapping = ErrorMapping(exc.status_code, CODE_NOT_FOUND, "Resource not found")
    else:
        phrase = HTTPStatus(exc.status_code).phrase
        mapping = ErrorMapping(exc.status_code, "HTTP_ERROR", phrase)
    return error_response(mapping)


def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    log_exception(
        _logger,
        "unhandled_exception",
        path=request.url.path,
        error_type=exc.__class__.__name__,
    )
    return error_response(INTERNAL)
