"""Poll-until-ready runner with exponential backoff.

``backoff()`` repeatedly calls an operation that reports "not ready yet"
by returning ``None`` (or the explicit ``NOT_READY`` sentinel), sleeping
between attempts with a delay that grows by ``backoff_factor``.

Exceptions raised by the operation are *not* retried: a failure is a
different outcome from "not ready" and propagates immediately.  Use this
for polling (e.g. waiting for a rendered PDF to appear), not for masking
errors.

Usage::

    url = await backoff(
        lambda: storage.signed_url_if_exists(key),
        max_attempts=8,
        initial_delay_ms=250,
    )
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from invoicing_runtime.core.clock import IClock, WallClock
from invoicing_runtime.core.config import BackoffConfig
from invoicing_runtime.core.errors import RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY_MS = 100
DEFAULT_BACKOFF_FACTOR = 1.5


class _NotReady:
    def __repr__(self) -> str:
        return "NOT_READY"

    def __bool__(self) -> bool:
        return False


NOT_READY: Any = _NotReady()


def is_not_ready(result: Any) -> bool:
    return result is None or result is NOT_READY


def backoff_schedule(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
) -> list[float]:
    """Delays (ms) slept between attempts; one fewer than *max_attempts*."""
    delays: list[float] = []
    delay = float(initial_delay_ms)
    for _ in range(max_attempts - 1):
        delays.append(delay)
        delay *= backoff_factor
    return delays


async def backoff(
    operation: Callable[[], Awaitable[T | None] | T | None],
    *,
    config: BackoffConfig | None = None,
    max_attempts: int | None = None,
    initial_delay_ms: float | None = None,
    backoff_factor: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call *operation* until it returns a usable result.

    Args:
        operation: Sync or async callable; ``None``/``NOT_READY`` means retry.
        config: Defaults for the three knobs below (``Settings.backoff``);
            an explicit keyword wins over the config.
        max_attempts: Total number of calls before giving up.
        initial_delay_ms: Wait after the first not-ready result.
        backoff_factor: Multiplier applied to the wait after each retry.
        sleep: Awaitable sleep taking seconds (injectable for tests).

    Raises:
        RetriesExhaustedError: after *max_attempts* not-ready results.
        Exception: anything *operation* raises, unchanged and unretried.
    """
    config = config or BackoffConfig(
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        initial_delay_ms=DEFAULT_INITIAL_DELAY_MS,
        backoff_factor=DEFAULT_BACKOFF_FACTOR,
    )
    if max_attempts is None:
        max_attempts = config.max_attempts
    if initial_delay_ms is None:
        initial_delay_ms = config.initial_delay_ms
    if backoff_factor is None:
        backoff_factor = config.backoff_factor

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if initial_delay_ms < 0 or backoff_factor <= 0:
        raise ValueError("initial_delay_ms must be >= 0 and backoff_factor > 0")

    delays = backoff_schedule(max_attempts, initial_delay_ms, backoff_factor)

    for attempt in range(1, max_attempts + 1):
        result = operation()
        if inspect.isawaitable(result):
            result = await result
        if not is_not_ready(result):
            return result  # type: ignore[return-value]

        if attempt < max_attempts:
            delay_ms = delays[attempt - 1]
            logger.debug(
                "Operation not ready (attempt %d/%d), retrying in %.0fms",
                attempt,
                max_attempts,
                delay_ms,
            )
            await sleep(delay_ms / 1000.0)

    raise RetriesExhaustedError(max_attempts)


class BackoffRunner:
    """``backoff()`` bound to the process's ``BackoffConfig``.

    Bound in the container by ``build_runtime`` so services poll with the
    configured attempts and delays instead of the module defaults.  Waits go
    through the runtime clock.
    """

    def __init__(self, config: BackoffConfig, clock: IClock | None = None) -> None:
        self.config = config
        self._clock = clock or WallClock()

    async def run(
        self, operation: Callable[[], Awaitable[T | None] | T | None], **overrides: Any,
    ) -> T:
        return await backoff(operation, config=self.config, sleep=self._clock.sleep, **overrides)

    __call__ = run
