"""Transport boundary and the in-memory transport.

A transport stores enqueued envelopes and delivers them, at least once,
to the single consumer subscribed to it (normally
``HandlerRegistry.dispatch``).  Transient consumer failures are redelivered
up to ``max_delivery_attempts`` times, each after a growing delay;
``PermanentDeliveryError`` failures are dead-lettered on the first attempt.

The memory transport has no external dependencies and is what tests and
local runs use.  Delivery happens on a background task, so ``enqueue()``
returns as soon as the envelope is queued and never sees handler errors.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from invoicing_runtime.common.backoff import backoff_schedule
from invoicing_runtime.common.deferred import Deferred
from invoicing_runtime.core.clock import IClock, WallClock
from invoicing_runtime.core.enums import DeliveryOutcome
from invoicing_runtime.core.errors import EventError, PermanentDeliveryError
from invoicing_runtime.observability.metrics import record_event_handled

from .envelope import EventEnvelope

logger = logging.getLogger(__name__)

Consumer = Callable[[EventEnvelope], Awaitable[None]]


@runtime_checkable
class EventTransport(Protocol):
    """What the event bus needs from a delivery backend."""

    async def enqueue(self, envelope: EventEnvelope) -> str:
        """Store *envelope* for delivery and return the transport's id for it."""
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def subscribe(self, consumer: Consumer) -> None:
        ...


@dataclass
class DeadLetter:
    """Record of an envelope that will not be delivered again."""

    event_id: str
    name: str
    error: str
    attempts: int
    permanent: bool = False
    timestamp: float = field(default_factory=time.monotonic)


@dataclass
class _Delivery:
    envelope: EventEnvelope
    attempts: int = 0


class MemoryTransport:
    """In-process queue with redelivery and dead-letter tracking.

    Parameters
    ----------
    max_delivery_attempts:
        Consumer invocations allowed for a transiently failing envelope
        before it is dead-lettered.
    redelivery_delay_ms, redelivery_backoff_factor:
        Wait before the first redelivery and its growth per further attempt.
    clock:
        Time source for redelivery waits.
    """

    def __init__(
        self,
        max_delivery_attempts: int = 3,
        redelivery_delay_ms: float = 100,
        redelivery_backoff_factor: float = 2.0,
        clock: IClock | None = None,
    ) -> None:
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be >= 1")
        self._max_attempts = max_delivery_attempts
        self._redelivery_delays = backoff_schedule(
            max_delivery_attempts, redelivery_delay_ms, redelivery_backoff_factor,
        )
        self._clock = clock or WallClock()
        self._redeliveries: set[asyncio.Task] = set()
        self._queue: asyncio.Queue[_Delivery] = asyncio.Queue()
        self._consumer: Consumer | None = None
        self._worker: asyncio.Task | None = None
        self._running = False
        self._outcomes: dict[str, Deferred[DeliveryOutcome]] = {}

        # Observability
        self._history: list[EventEnvelope] = []
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[DeadLetter] = []
        self._messages_processed: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._deliver_loop(), name="memory-transport")

    async def stop(self) -> None:
        """Stop delivering.  Queued envelopes stay queued."""
        self._running = False
        for task in list(self._redeliveries):
            task.cancel()
        await asyncio.gather(*self._redeliveries, return_exceptions=True)
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    async def aclose(self) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Enqueue / Subscribe
    # ------------------------------------------------------------------

    async def enqueue(self, envelope: EventEnvelope) -> str:
        self._history.append(envelope)
        self._outcomes[envelope.event_id] = Deferred()
        self._queue.put_nowait(_Delivery(envelope))
        return envelope.event_id

    async def subscribe(self, consumer: Consumer) -> None:
        if self._consumer is not None:
            raise EventError("MemoryTransport already has a consumer")
        self._consumer = consumer

    async def drain(self) -> None:
        """Wait until every queued envelope, redeliveries included, is settled."""
        if not self._running:
            raise EventError("MemoryTransport not started")
        while True:
            await self._queue.join()
            if not self._redeliveries:
                return
            await asyncio.gather(*list(self._redeliveries), return_exceptions=True)

    async def wait_for(self, event_id: str) -> DeliveryOutcome:
        """Wait for the final outcome of the envelope enqueued as *event_id*."""
        deferred = self._outcomes.get(event_id)
        if deferred is None:
            raise KeyError(event_id)
        return await deferred

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver_loop(self) -> None:
        while self._running:
            delivery = await self._queue.get()
            try:
                await self._deliver(delivery)
            except asyncio.CancelledError:
                # Put back so a later start() still delivers it
                self._queue.put_nowait(delivery)
                raise
            finally:
                self._queue.task_done()

    async def _deliver(self, delivery: _Delivery) -> None:
        if self._consumer is None:
            # Nothing subscribed yet; hold the envelope until someone is
            await asyncio.sleep(0.01)
            self._queue.put_nowait(delivery)
            return

        envelope = delivery.envelope
        delivery.attempts += 1
        try:
            await self._consumer(envelope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_failure(delivery, exc)
            return

        self._messages_processed += 1
        record_event_handled(envelope.name, DeliveryOutcome.SUCCESS.value)
        self._settle(envelope.event_id, DeliveryOutcome.SUCCESS)

    def _on_failure(self, delivery: _Delivery, exc: Exception) -> None:
        envelope = delivery.envelope
        permanent = isinstance(exc, PermanentDeliveryError)
        self._error_counts[envelope.name] += 1

        if not permanent and delivery.attempts < self._max_attempts:
            delay_ms = self._redelivery_delays[delivery.attempts - 1]
            logger.warning(
                "Handler error for %s event=%s (attempt %d/%d), redelivering in %.0fms",
                envelope.name,
                envelope.event_id,
                delivery.attempts,
                self._max_attempts,
                delay_ms,
                exc_info=True,
            )
            record_event_handled(envelope.name, DeliveryOutcome.RETRY.value)
            task = asyncio.create_task(self._redeliver_later(delivery, delay_ms))
            self._redeliveries.add(task)
            task.add_done_callback(self._redeliveries.discard)
            return

        logger.error(
            "Dead-lettering %s event=%s after %d attempt(s): %s",
            envelope.name,
            envelope.event_id,
            delivery.attempts,
            exc,
        )
        self._dead_letters.append(
            DeadLetter(
                event_id=envelope.event_id,
                name=envelope.name,
                error=str(exc),
                attempts=delivery.attempts,
                permanent=permanent,
            )
        )
        record_event_handled(envelope.name, DeliveryOutcome.DEAD_LETTER.value)
        self._settle(envelope.event_id, DeliveryOutcome.DEAD_LETTER)

    async def _redeliver_later(self, delivery: _Delivery, delay_ms: float) -> None:
        try:
            await self._clock.sleep(delay_ms / 1000.0)
        finally:
            # Also requeued when cancelled by stop()
            self._queue.put_nowait(delivery)

    def _settle(self, event_id: str, outcome: DeliveryOutcome) -> None:
        deferred = self._outcomes.get(event_id)
        if deferred is not None and not deferred.settled:
            deferred.settle(outcome)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Return per-event-name failure counts."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    def clear_dead_letters(self) -> list[DeadLetter]:
        drained = self._dead_letters[:]
        self._dead_letters.clear()
        return drained

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    def get_history(self, name: str | None = None) -> list[EventEnvelope]:
        """Enqueued envelopes, optionally filtered by event name."""
        if name is None:
            return list(self._history)
        return [e for e in self._history if e.name == name]

    def clear_history(self) -> None:
        self._history.clear()
