"""Shared fixtures for the invoicing-runtime test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from invoicing_runtime.bootstrap import build_runtime
from invoicing_runtime.core.clock import SimClock
from invoicing_runtime.core.config import Settings
from invoicing_runtime.di.container import Container
from invoicing_runtime.events.transport import MemoryTransport


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Return a SimClock starting at 2024-06-01 00:00 UTC."""
    return SimClock(start=datetime(2024, 6, 1, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Container / settings
# ---------------------------------------------------------------------------

@pytest.fixture
def container() -> Container:
    return Container(name="test")


@pytest.fixture
def settings() -> Settings:
    """Settings with the in-memory transport, isolated from the environment."""
    return Settings(
        service_name="invoicing-test",
        event_bus={"transport": "memory", "bus_name": "test-bus", "max_delivery_attempts": 3},
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@pytest.fixture
async def memory_transport(sim_clock):
    """A started MemoryTransport, stopped after the test.

    Redelivery waits run on the simulated clock, so retries are immediate.
    """
    transport = MemoryTransport(max_delivery_attempts=3, clock=sim_clock)
    await transport.start()
    yield transport
    await transport.stop()


@pytest.fixture
async def runtime(settings, sim_clock):
    """A fresh, initialised runtime per test."""
    rt = build_runtime(settings, clock=sim_clock)
    await rt.init()
    yield rt
    await rt.dispose()
