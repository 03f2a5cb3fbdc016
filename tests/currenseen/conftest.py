from __future__ import annotations

import pytest

from tests.currenseen.support.fakes import (
    FakeClock,
    FakeLogger,
    FakeMonotonic,
    FlakyStore,
    ScriptedProvider,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a wall clock pinned to a fixed instant."""
    return FakeClock()


@pytest.fixture
def fake_monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def flaky_store(fake_clock: FakeClock) -> FlakyStore:
    """Provide an empty in-memory store sharing the fake clock."""
    return FlakyStore(clock=fake_clock)


@pytest.fixture
def scripted_provider(fake_clock: FakeClock) -> ScriptedProvider:
    return ScriptedProvider(fake_clock)
