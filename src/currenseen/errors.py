"""Shared error types for currenseen.

Every error the core raises carries an ``ErrorKind``. The transport maps kinds
to status codes and stable client messages; exception text never reaches
clients.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Error taxonomy exposed to the transport layer."""

    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    INTERNAL = "internal"


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class CurrenseenError(Exception):
    """Base exception for every error the rate core raises."""

    kind: ErrorKind = ErrorKind.INTERNAL


class InvalidInputError(CurrenseenError, ValueError):
    """Raised for malformed currency codes or an identical base and target."""

    kind = ErrorKind.INVALID_INPUT


class InvalidCurrencyCodeError(InvalidInputError):
    """Raised when a value is not exactly three ASCII letters."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"invalid currency code: {value!r}")


class InvalidRateError(InvalidInputError):
    """Raised when a rate violates its construction invariants."""


class CurrencyMismatchError(InvalidInputError):
    """Raised when base and target currencies are the same."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"base and target currencies cannot be the same: {code}")


class RateNotFoundError(CurrenseenError):
    """Raised when no rate exists for a pair."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, base: str, target: str) -> None:
        self.base = base
        self.target = target
        super().__init__(f"exchange rate not found for {base}/{target}")


class ProviderUnavailableError(CurrenseenError):
    """Raised for transport, parse or content-shape failures talking upstream."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE

    def __init__(self, message: str, http_status: int | None = None) -> None:
        """Initialize provider-error metadata.

        Args:
            message: Human-readable error message.
            http_status: Optional HTTP status observed from the upstream.
        """
        super().__init__(message)
        self.http_status = http_status


class ProviderTransientError(ProviderUnavailableError, TransientError):
    """Raised for retryable upstream failures (timeouts, I/O, 5xx, 429)."""


class RequestCancelledError(CurrenseenError):
    """Raised when the request context was cancelled."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "request cancelled") -> None:
        super().__init__(message)


class DeadlineExceededError(CurrenseenError):
    """Raised when the request context deadline passed."""

    kind = ErrorKind.DEADLINE_EXCEEDED

    def __init__(self, message: str = "request deadline exceeded") -> None:
        super().__init__(message)


class InternalError(CurrenseenError):
    """Raised for unexpected failures; ``cause`` is kept for diagnostics only."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class CorruptRecordError(InternalError):
    """Raised by stores when a persisted record fails domain validation."""

    def __init__(self, key: str, cause: BaseException | None = None) -> None:
        self.key = key
        super().__init__(f"stored record {key} failed validation", cause=cause)


class StoreError(CurrenseenError):
    """Raised when the backing store cannot be read or written."""

    kind = ErrorKind.INTERNAL


CONTEXT_ERRORS: tuple[type[CurrenseenError], ...] = (
    RequestCancelledError,
    DeadlineExceededError,
)
"""Errors that signal the request ended rather than a dependency failure."""
