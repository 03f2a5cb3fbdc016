"""SQLAlchemy-backed rate store (SQLite via aiosqlite by default)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import BigInteger, Boolean, Float, Index, String, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncAttrs,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from currenseen.clock import Clock, SystemClock
from currenseen.context import CallContext
from currenseen.errors import CorruptRecordError, RateNotFoundError, StoreError
from currenseen.logging import StructuredLogger, log_info
from currenseen.rates.models import CurrencyCode, RateRecord, record_key
from currenseen.store.base import expiry_epoch_seconds, probe_read


class Base(AsyncAttrs, DeclarativeBase):
    pass


class ExchangeRateRow(Base):
    """One row per currency pair; column names follow the wire record."""

    __tablename__ = "exchange_rates"
    __table_args__ = (Index("ix_exchange_rates_base", "Base"),)

    pk: Mapped[str] = mapped_column("PK", String(16), primary_key=True)
    base: Mapped[str] = mapped_column("Base", String(3), nullable=False)
    target: Mapped[str] = mapped_column("Target", String(3), nullable=False)
    rate: Mapped[float] = mapped_column("Rate", Float, nullable=False)
    timestamp: Mapped[int] = mapped_column("Timestamp", BigInteger, nullable=False)
    stale: Mapped[bool] = mapped_column("Stale", Boolean, nullable=False, default=False)
    ttl: Mapped[int | None] = mapped_column("ttl", BigInteger, nullable=True)

    @classmethod
    def from_record(cls, record: RateRecord) -> ExchangeRateRow:
        item = record.to_item()
        return cls(
            pk=item["PK"],
            base=item["Base"],
            target=item["Target"],
            rate=item["Rate"],
            timestamp=item["Timestamp"],
            stale=item["Stale"],
            ttl=item.get("ttl"),
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "PK": self.pk,
            "Base": self.base,
            "Target": self.target,
            "Rate": self.rate,
            "Timestamp": self.timestamp,
            "Stale": self.stale,
            "ttl": self.ttl,
        }

    def __repr__(self) -> str:
        return f"<ExchangeRateRow(pk={self.pk}, rate={self.rate})>"


def _row_to_record(row: ExchangeRateRow) -> RateRecord:
    try:
        return RateRecord.from_item(row.to_item())
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptRecordError(row.pk, cause=exc) from exc


class SqlRateStore:
    """Rate store over an async SQLAlchemy engine.

    Database failures surface as ``StoreError``. Expired rows stay readable
    until ``evict_expired()`` deletes them.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        clock: Clock | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._clock = SystemClock() if clock is None else clock
        self._logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_url(
        cls,
        database_url: str,
        *,
        clock: Clock | None = None,
        echo: bool = False,
    ) -> SqlRateStore:
        engine = create_async_engine(database_url, echo=echo)
        return cls(engine, clock=clock)

    async def initialize(self) -> None:
        """Create the table and its base index when missing."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StoreError(f"failed to initialize rate store: {exc}") from exc

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StoreError(f"rate store {operation} failed: {exc}") from exc

    async def _get(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode, operation: str
    ) -> RateRecord:
        ctx.raise_if_done()
        async with self._session(operation) as session:
            row = await ctx.guard(session.get(ExchangeRateRow, record_key(base, target)))
            if row is None:
                raise RateNotFoundError(base, target)
            return _row_to_record(row)

    async def get(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> RateRecord:
        return await self._get(ctx, base, target, "get")

    async def get_stale(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> RateRecord:
        return await self._get(ctx, base, target, "get_stale")

    async def get_by_base(self, ctx: CallContext, base: CurrencyCode) -> list[RateRecord]:
        ctx.raise_if_done()
        stmt = (
            select(ExchangeRateRow)
            .where(ExchangeRateRow.base == str(base))
            .order_by(ExchangeRateRow.target)
        )
        async with self._session("get_by_base") as session:
            result = await ctx.guard(session.execute(stmt))
            return [_row_to_record(row) for row in result.scalars().all()]

    async def put(self, ctx: CallContext, record: RateRecord, ttl: timedelta) -> None:
        ctx.raise_if_done()
        expiry = expiry_epoch_seconds(self._clock.now().timestamp(), ttl)
        row = ExchangeRateRow.from_record(
            replace(record, store_expiry_epoch_seconds=expiry)
        )
        async with self._session("put") as session:
            await ctx.guard(session.merge(row))
            await ctx.guard(session.commit())

    async def delete(
        self, ctx: CallContext, base: CurrencyCode, target: CurrencyCode
    ) -> None:
        ctx.raise_if_done()
        stmt = delete(ExchangeRateRow).where(
            ExchangeRateRow.pk == record_key(base, target)
        )
        async with self._session("delete") as session:
            result = await ctx.guard(session.execute(stmt))
            await ctx.guard(session.commit())
        if result.rowcount == 0:
            raise RateNotFoundError(base, target)

    async def ping(self, ctx: CallContext) -> None:
        await probe_read(self, ctx)

    async def evict_expired(self) -> int:
        """Delete rows past their advisory expiry; returns how many were removed."""
        now = int(self._clock.now().timestamp())
        stmt = delete(ExchangeRateRow).where(
            ExchangeRateRow.ttl.is_not(None),
            ExchangeRateRow.ttl <= now,
        )
        async with self._session("evict_expired") as session:
            result = await session.execute(stmt)
            await session.commit()
        deleted = result.rowcount or 0
        if deleted > 0:
            log_info(self._logger, "rate_store_evicted", deleted=deleted)
        return deleted
