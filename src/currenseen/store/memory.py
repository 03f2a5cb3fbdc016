from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from currenseen.clock import Clock, SystemClock
from currenseen.context import CallContext
from currenseen.errors import RateNotFoundError
from currenseen.rates.models import CurrencyCode, RateRecord, record_key
from currenseen.store.base import expiry_epoch_seconds, probe_read


class InMemoryRateStore:
    """Process-local rate store with a secondary index on base currency.

    Expired records stay readable until ``evict_expired()`` runs.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = SystemClock() if clock is None else clock
        self._records: dict[str, RateRecord] = {}
        self._keys_by_base: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _lookup(self, base: CurrencyCode, target: CurrencyCode) -> RateRecord:
        record = self._records.get(record_key(base, target))
        if record is None:
            raise RateNotFoundError(base, target)
        return record

    async def get(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> RateRecord:
        ctx.raise_if_done()
        return self._lookup(base, target)

    async def get_stale(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> RateRecord:
        ctx.raise_if_done()
        return self._lookup(base, target)

    async def get_by_base(self, ctx: CallContext, base: CurrencyCode) -> list[RateRecord]:
        ctx.raise_if_done()
        keys = sorted(self._keys_by_base.get(str(base), ()))
        return [self._records[key] for key in keys]

    async def put(self, ctx: CallContext, record: RateRecord, ttl: timedelta) -> None:
        ctx.raise_if_done()
        expiry = expiry_epoch_seconds(self._clock.now().timestamp(), ttl)
        stored = replace(record, store_expiry_epoch_seconds=expiry)
        self._records[stored.key] = stored
        self._keys_by_base.setdefault(stored.base, set()).add(stored.key)

    async def delete(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> None:
        ctx.raise_if_done()
        record = self._records.pop(record_key(base, target), None)
        if record is None:
            raise RateNotFoundError(base, target)
        self._forget_index(record)

    async def ping(self, ctx: CallContext) -> None:
        await probe_read(self, ctx)

    def evict_expired(self) -> int:
        """Drop records past their advisory expiry; returns how many were removed."""
        now = self._clock.now().timestamp()
        expired = [record for record in self._records.values() if record.is_expired(now)]
        for record in expired:
            del self._records[record.key]
            self._forget_index(record)
        return len(expired)

    def _forget_index(self, record: RateRecord) -> None:
        keys = self._keys_by_base.get(record.base)
        if keys is None:
            return
        keys.discard(record.key)
        if not keys:
            del self._keys_by_base[record.base]
