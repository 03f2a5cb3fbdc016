from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog

from currenseen.circuit_breaker import CircuitBreaker
from currenseen.context import CallContext
from currenseen.logging import log_warning
from currenseen.store.base import RateStore

STATUS_HEALTHY = "healthy"
STATUS_UNHEALTHY = "unhealthy"
STATUS_DEGRADED = "degraded"
REASON_CHECK_FAILED = "check_failed"
DEFAULT_CHECK_TIMEOUT_SECONDS = 5.0

HealthCheck = Callable[[], Awaitable["CheckResult"]]
_logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckResult:
    """Result of one dependency health check.

    ``ok`` decides overall health; ``status`` is the label reported to clients,
    so a check may be ``ok`` while reporting ``degraded``.
    """

    name: str
    ok: bool
    status: str = STATUS_HEALTHY
    detail: str = ""
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze check metadata mapping to keep snapshots read-only."""
        frozen_data = MappingProxyType(dict(self.data))
        object.__setattr__(self, "data", frozen_data)


@dataclass(frozen=True)
class HealthSnapshot:
    """Immutable snapshot of overall health and per-check outcomes."""

    status: str
    healthy: bool
    checked_at: float
    check_results: tuple[CheckResult, ...]

    def checks(self) -> dict[str, str]:
        return {result.name: result.status for result in self.check_results}


def make_store_check(
    store: RateStore,
    *,
    name: str = "store",
    timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
) -> HealthCheck:
    """Build a check that probe-reads the store; a missing record is healthy."""

    async def _check() -> CheckResult:
        try:
            await store.ping(CallContext.with_timeout(timeout_seconds))
        except Exception as exc:
            return CheckResult(
                name=name,
                ok=False,
                status=STATUS_UNHEALTHY,
                detail=f"{exc.__class__.__name__}: {exc}",
            )
        return CheckResult(name=name, ok=True)

    _check.__name__ = name
    return _check


def make_breaker_check(
    breaker: CircuitBreaker,
    *,
    name: str = "circuit_breaker",
) -> HealthCheck:
    """Report breaker state; an open circuit degrades but never fails health."""

    async def _check() -> CheckResult:
        snapshot = breaker.snapshot()
        status = STATUS_HEALTHY if snapshot.is_closed else STATUS_DEGRADED
        return CheckResult(
            name=name,
            ok=True,
            status=status,
            detail=str(snapshot.state),
            data=snapshot.as_fields(),
        )

    _check.__name__ = name
    return _check


async def evaluate_health(
    checks: Sequence[HealthCheck],
    *,
    now_fn: Callable[[], float] = time.time,
) -> HealthSnapshot:
    """Run every check once; a raising check counts as unhealthy."""
    results: list[CheckResult] = []
    for check in checks:
        try:
            result = await check()
        except Exception as exc:
            check_name = getattr(check, "__name__", "unnamed_check")
            result = CheckResult(
                name=check_name,
                ok=False,
                status=STATUS_UNHEALTHY,
                detail=f"{REASON_CHECK_FAILED}: {exc.__class__.__name__}: {exc}",
            )
        results.append(result)

    healthy = all(result.ok for result in results)
    if not healthy:
        failed = [result.name for result in results if not result.ok]
        log_warning(_logger, "health_check_failed", failed_checks=failed)
    return HealthSnapshot(
        status=STATUS_HEALTHY if healthy else STATUS_UNHEALTHY,
        healthy=healthy,
        checked_at=now_fn(),
        check_results=tuple(results),
    )
