"""Clock abstraction for time-dependent runtime code.

WallClock: real time, real ``asyncio.sleep``
SimClock: time moves only when advanced; ``sleep()`` advances it

Cache expiry, job scheduling, backoff waits and transport redelivery delays
all go through a clock, so tests move time forward instead of sleeping.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol


class IClock(Protocol):
    def now(self) -> datetime:
        """Current time as timezone-aware UTC datetime."""
        ...

    def now_ms(self) -> int:
        """Current time as milliseconds since epoch."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Wait *seconds* of this clock's time."""
        ...


class WallClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_ms(self) -> int:
        return int(self.now().timestamp() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SimClock:
    """Manually driven clock.

    ``sleep()`` jumps time forward by the requested amount and yields once
    to the event loop, so code waiting on a delay completes immediately
    while still observing the elapsed time.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._time = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self._time

    def now_ms(self) -> int:
        return int(self._time.timestamp() * 1000)

    def set_time(self, t: datetime) -> None:
        if t < self._time:
            raise ValueError(
                f"SimClock cannot go backwards: {t} < {self._time}"
            )
        self._time = t

    def advance(self, seconds: float) -> None:
        self.set_time(self._time + timedelta(seconds=seconds))

    def advance_ms(self, ms: int) -> None:
        self.set_time(self._time + timedelta(milliseconds=ms))

    async def sleep(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("sleep length must be non-negative")
        self.slept.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
