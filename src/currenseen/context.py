"""Per-request cancellation and deadline token.

A ``CallContext`` travels explicitly through the rate service, the provider and
the store. Every outbound operation checks it before starting and is raced
against it while in flight, so a cancelled or expired request never starts new
I/O and abandons the I/O it already started.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import TypeVar

from currenseen.errors import (
    CurrenseenError,
    DeadlineExceededError,
    RequestCancelledError,
)

T = TypeVar("T")


class CallContext:
    """Cancellation event plus an optional absolute monotonic deadline."""

    def __init__(
        self,
        *,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Build a request context.

        Args:
            deadline: Absolute ``monotonic()`` value after which the request is
                expired. ``None`` means no deadline.
            cancel_event: Event that, once set, marks the request cancelled.
            monotonic: Clock used for deadline arithmetic.
        """
        self._deadline = deadline
        self._cancel_event = cancel_event
        self._monotonic = monotonic

    @classmethod
    def background(cls) -> CallContext:
        """Return a context that is never cancelled and never expires."""
        return cls()

    @classmethod
    def with_timeout(
        cls,
        seconds: float,
        *,
        cancel_event: asyncio.Event | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> CallContext:
        """Return a context whose deadline is ``seconds`` from now."""
        return cls(
            deadline=monotonic() + seconds,
            cancel_event=cancel_event,
            monotonic=monotonic,
        )

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def cancel(self) -> None:
        """Mark the context cancelled; creates the event on first use."""
        if self._cancel_event is None:
            self._cancel_event = asyncio.Event()
        self._cancel_event.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or ``None`` without a deadline."""
        if self._deadline is None:
            return None
        return max(self._deadline - self._monotonic(), 0.0)

    def error(self) -> CurrenseenError | None:
        """Return the error describing why the context is done, if it is."""
        if self.cancelled:
            return RequestCancelledError()
        if self._deadline is not None and self._monotonic() >= self._deadline:
            return DeadlineExceededError()
        return None

    def done(self) -> bool:
        return self.error() is not None

    def raise_if_done(self) -> None:
        error = self.error()
        if error is not None:
            raise error

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await one I/O operation, aborting it when the context ends.

        Raises:
            RequestCancelledError: The cancel event fired before completion.
            DeadlineExceededError: The deadline passed before completion.
        """
        self.raise_if_done()
        if self._cancel_event is None and self._deadline is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future[object]] = {task}
        cancel_waiter: asyncio.Task[bool] | None = None
        if self._cancel_event is not None:
            cancel_waiter = asyncio.create_task(self._cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError, Exception):
                    await task

        if task in done:
            return task.result()
        self.raise_if_done()
        raise DeadlineExceededError()

    async def sleep(self, delay: float) -> None:
        """Sleep up to ``delay`` seconds; wakes early and raises if the context ends."""
        self.raise_if_done()
        bounded_delay = max(delay, 0.0)
        remaining = self.remaining()
        outlives_deadline = remaining is not None and remaining <= bounded_delay
        if remaining is not None:
            bounded_delay = min(bounded_delay, remaining)

        if self._cancel_event is None:
            await asyncio.sleep(bounded_delay)
        else:
            with suppress(TimeoutError):
                await asyncio.wait_for(self._cancel_event.wait(), timeout=bounded_delay)
        self.raise_if_done()
        if outlives_deadline:
            raise DeadlineExceededError()
