from __future__ import annotations

from currenseen.errors import CurrenseenError, ErrorKind


class CircuitOpenError(CurrenseenError):
    """The upstream call was refused without being attempted.

    ``retry_after`` is the number of seconds until the breaker admits a
    half-open probe; the HTTP layer rounds it up into a ``Retry-After`` header.
    """

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, breaker_name: str, retry_after: float) -> None:
        self.breaker_name = breaker_name
        self.retry_after = max(retry_after, 0.0)
        super().__init__(
            f"circuit breaker {breaker_name!r} is open; "
            f"next probe in {self.retry_after:.3f}s"
        )
