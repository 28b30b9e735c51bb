"""Redis Streams transport.

Every envelope of a bus goes to one stream (named after the bus) and is
consumed through a consumer group, which gives at-least-once delivery
across restarts.

Delivery rules:
- A message is only acked after the consumer succeeds.
- A failed message stays pending and is re-read from the group's pending
  list, up to ``max_delivery_attempts`` times, once its redelivery delay
  (``backoff_schedule`` of the redelivery settings) has passed.  While it
  waits, new messages are read as usual.
- ``PermanentDeliveryError`` failures and undecodable messages are
  dead-lettered and acked at once so they don't block the stream.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

import redis.asyncio as aioredis
from pydantic import ValidationError

from invoicing_runtime.common.backoff import backoff_schedule
from invoicing_runtime.core.clock import IClock, WallClock
from invoicing_runtime.core.enums import DeliveryOutcome
from invoicing_runtime.core.errors import EventError, PermanentDeliveryError
from invoicing_runtime.observability.metrics import record_event_handled

from .envelope import EventEnvelope
from .transport import Consumer, DeadLetter

logger = logging.getLogger(__name__)


class RedisStreamsTransport:
    """Production transport backed by a Redis Stream and consumer group."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        stream: str = "default",
        group: str = "handlers",
        consumer_name: str | None = None,
        max_stream_length: int = 10_000,
        block_ms: int = 1000,
        batch_size: int = 10,
        max_delivery_attempts: int = 3,
        redelivery_delay_ms: float = 100,
        redelivery_backoff_factor: float = 2.0,
        client: aioredis.Redis | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = client
        self._owns_client = client is None
        self._stream = stream
        self._group = group
        self._consumer_name = consumer_name or f"{group}-worker"
        self._max_len = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._max_attempts = max_delivery_attempts
        self._redelivery_delays = backoff_schedule(
            max_delivery_attempts, redelivery_delay_ms, redelivery_backoff_factor,
        )
        self._clock = clock or WallClock()
        self._retry_at: dict[str, int] = {}
        self._consumer: Consumer | None = None
        self._task: asyncio.Task | None = None
        self._running = False

        # Observability
        self._error_counts: dict[str, int] = defaultdict(int)
        self._attempts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[DeadLetter] = []
        self._messages_processed: int = 0

    @property
    def stream(self) -> str:
        return self._stream

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def start(self) -> None:
        """Connect and, if a consumer is subscribed, start the consume loop."""
        await self.connect()
        self._running = True
        if self._consumer is not None and self._task is None:
            await self._launch()

    async def stop(self) -> None:
        """Stop the consume loop and close the connection if we opened it."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def aclose(self) -> None:
        await self.stop()

    async def run_forever(self) -> None:
        """Block until the consume loop ends (used by the CLI)."""
        if self._task is None:
            raise EventError("RedisStreamsTransport has no running consumer")
        await self._task

    # ------------------------------------------------------------------
    # Enqueue / Subscribe
    # ------------------------------------------------------------------

    async def enqueue(self, envelope: EventEnvelope) -> str:
        """XADD the envelope; returns the stream message id."""
        redis = await self.connect()
        fields = {"_name": envelope.name, "_data": envelope.to_json()}
        msg_id = await redis.xadd(
            self._stream, fields, maxlen=self._max_len, approximate=True,
        )
        return str(msg_id)

    async def subscribe(self, consumer: Consumer) -> None:
        """Set the consumer; launches the loop at once if already started."""
        if self._consumer is not None:
            raise EventError("RedisStreamsTransport already has a consumer")
        self._consumer = consumer
        if self._running and self._task is None:
            await self._launch()

    async def _launch(self) -> None:
        await self._ensure_group()
        self._task = asyncio.create_task(
            self._consume_loop(), name=f"consumer-{self._stream}-{self._group}",
        )

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _consume_loop(self) -> None:
        assert self._redis is not None

        while self._running:
            try:
                # Own pending entries first; failed ones wait out their redelivery delay
                entries = await self._redis.xreadgroup(
                    groupname=self._group,
                    consumername=self._consumer_name,
                    streams={self._stream: "0"},
                    count=self._batch_size,
                )
                entries = self._due_entries(entries)
                if not entries:
                    entries = await self._redis.xreadgroup(
                        groupname=self._group,
                        consumername=self._consumer_name,
                        streams={self._stream: ">"},
                        count=self._batch_size,
                        block=self._block_ms,
                    )

                if not entries:
                    continue

                for _stream, messages in entries:
                    for msg_id, fields in messages:
                        await self._process_message(msg_id, fields)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception(
                    "Consumer loop error for %s/%s", self._stream, self._group,
                )
                self._error_counts["_loop"] += 1
                await asyncio.sleep(1)

    async def _process_message(self, msg_id: str, fields: dict[str, str] | None) -> None:
        """Deliver one message; ack on success or when dead-lettered."""
        assert self._redis is not None and self._consumer is not None
        fields = fields or {}
        name = fields.get("_name", "unknown")

        envelope = self._deserialize(fields)
        if envelope is None:
            await self._dead_letter(msg_id, name, "deserialization_failed", 1, permanent=True)
            return

        try:
            await self._consumer(envelope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error_counts[name] += 1
            self._attempts[msg_id] += 1
            attempts = self._attempts[msg_id]
            permanent = isinstance(exc, PermanentDeliveryError)

            if permanent or attempts >= self._max_attempts:
                logger.error(
                    "Dead-lettering %s msg=%s after %d attempt(s): %s",
                    name, msg_id, attempts, exc,
                )
                await self._dead_letter(msg_id, name, str(exc), attempts, permanent=permanent)
            else:
                logger.warning(
                    "Handler error for %s msg=%s (attempt %d/%d)",
                    name, msg_id, attempts, self._max_attempts,
                    exc_info=True,
                )
                record_event_handled(name, DeliveryOutcome.RETRY.value)
                # Left un-acked; re-read from the pending list once the delay passed
                delay_ms = self._redelivery_delays[attempts - 1]
                self._retry_at[msg_id] = self._clock.now_ms() + int(delay_ms)
            return

        await self._redis.xack(self._stream, self._group, msg_id)
        self._attempts.pop(msg_id, None)
        self._retry_at.pop(msg_id, None)
        self._messages_processed += 1
        record_event_handled(name, DeliveryOutcome.SUCCESS.value)

    async def _dead_letter(
        self, msg_id: str, name: str, error: str, attempts: int, *, permanent: bool,
    ) -> None:
        assert self._redis is not None
        self._dead_letters.append(
            DeadLetter(
                event_id=str(msg_id),
                name=name,
                error=error,
                attempts=attempts,
                permanent=permanent,
            )
        )
        record_event_handled(name, DeliveryOutcome.DEAD_LETTER.value)
        await self._redis.xack(self._stream, self._group, msg_id)
        self._attempts.pop(msg_id, None)
        self._retry_at.pop(msg_id, None)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
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
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_group(self) -> None:
        """Create consumer group, ignoring BUSYGROUP if it already exists."""
        assert self._redis is not None
        try:
            await self._redis.xgroup_create(
                self._stream, self._group, id="0", mkstream=True,
            )
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    def _due_entries(self, entries: Any) -> list[Any]:
        """Pending entries whose redelivery delay has passed."""
        now = self._clock.now_ms()
        due = []
        for stream, messages in entries or []:
            ready = [
                (msg_id, fields) for msg_id, fields in messages
                if self._retry_at.get(msg_id, 0) <= now
            ]
            if ready:
                due.append((stream, ready))
        return due

    @staticmethod
    def _deserialize(fields: dict[str, str]) -> EventEnvelope | None:
        data = fields.get("_data")
        if not data:
            logger.warning("Malformed message: %s", fields)
            return None
        try:
            return EventEnvelope.from_json(data)
        except (ValueError, ValidationError):
            logger.warning("Undecodable envelope: %s", fields, exc_info=True)
            return None
