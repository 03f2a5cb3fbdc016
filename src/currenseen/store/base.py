"""Store contract consumed by the rate service."""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol

from currenseen.context import CallContext
from currenseen.errors import RateNotFoundError
from currenseen.rates.models import CurrencyCode, RateRecord

PROBE_BASE = CurrencyCode("XXX")
PROBE_TARGET = CurrencyCode("YYY")


class RateStore(Protocol):
    """Durable key-value mapping from ``RATE#BASE#TARGET`` to a rate record.

    Reads return a record even past its advisory expiry until the store has
    evicted it. Implementations raise ``RateNotFoundError`` for absent keys,
    ``StoreError`` for I/O failures and ``CorruptRecordError`` for records they
    cannot decode.
    """

    async def get(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> RateRecord:
        """Return the record for a pair."""

    async def get_stale(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> RateRecord:
        """Return the record for a pair when serving a stale fallback."""

    async def get_by_base(self, ctx: CallContext, base: CurrencyCode) -> list[RateRecord]:
        """Return every record quoted against ``base``; empty when none exist."""

    async def put(self, ctx: CallContext, record: RateRecord, ttl: timedelta) -> None:
        """Upsert a record; ``ttl > 0`` sets its advisory expiry to now + ttl."""

    async def delete(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> None:
        """Remove a record; raises ``RateNotFoundError`` when it is absent."""

    async def ping(self, ctx: CallContext) -> None:
        """Raise when the store cannot serve reads."""


def expiry_epoch_seconds(now_epoch_seconds: float, ttl: timedelta) -> int | None:
    """Advisory expiry for a record written at ``now_epoch_seconds``."""
    if ttl <= timedelta(0):
        return None
    return int(now_epoch_seconds + ttl.total_seconds())


async def probe_read(store: RateStore, ctx: CallContext) -> None:
    """Read a pair that never exists; only a missing record counts as healthy."""
    try:
        await store.get(ctx, PROBE_BASE, PROBE_TARGET)
    except RateNotFoundError:
        return
