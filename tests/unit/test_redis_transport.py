"""Tests for RedisStreamsTransport against a mocked client (no Redis required)."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from invoicing_runtime.core.errors import EventError, NoEventHandlerError
from invoicing_runtime.di.container import Container
from invoicing_runtime.events.envelope import EventEnvelope
from invoicing_runtime.events.handler import HandlerContext, make_event_handler
from invoicing_runtime.events.redis_streams import RedisStreamsTransport
from invoicing_runtime.events.transport import EventTransport

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client() -> AsyncMock:
    client = AsyncMock()
    client.xadd.return_value = "1700000000000-0"
    return client


def _fields(envelope: EventEnvelope) -> dict[str, str]:
    return {"_name": envelope.name, "_data": envelope.to_json()}


def _transport(client, **kwargs) -> RedisStreamsTransport:
    return RedisStreamsTransport(client=client, stream="invoicing", **kwargs)


# ===========================================================================
# Construction / enqueue
# ===========================================================================


class TestRedisStreamsConstruction:
    def test_defaults(self):
        transport = RedisStreamsTransport()
        assert transport.stream == "default"
        assert transport.dead_letters == []
        assert transport.messages_processed == 0
        assert transport.get_error_counts() == {}

    def test_satisfies_protocol(self):
        assert isinstance(RedisStreamsTransport(), EventTransport)


class TestRedisStreamsEnqueue:
    async def test_xadd_with_routing_name(self):
        client = _client()
        transport = _transport(client, max_stream_length=500)
        env = EventEnvelope(name="receipt", payload={"id": "abc"})

        msg_id = await transport.enqueue(env)

        assert msg_id == "1700000000000-0"
        client.xadd.assert_awaited_once()
        args, kwargs = client.xadd.call_args
        assert args[0] == "invoicing"
        assert args[1]["_name"] == "receipt"
        assert EventEnvelope.from_json(args[1]["_data"]).payload == {"id": "abc"}
        assert kwargs == {"maxlen": 500, "approximate": True}

    async def test_subscribe_twice_rejected(self):
        transport = _transport(_client())

        async def consumer(envelope):
            pass

        await transport.subscribe(consumer)
        with pytest.raises(EventError):
            await transport.subscribe(consumer)

    async def test_ensure_group_ignores_busygroup(self):
        client = _client()
        client.xgroup_create.side_effect = aioredis.ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )
        transport = _transport(client)
        await transport._ensure_group()

    async def test_ensure_group_other_errors_raise(self):
        client = _client()
        client.xgroup_create.side_effect = aioredis.ResponseError("WRONGTYPE")
        transport = _transport(client)
        with pytest.raises(aioredis.ResponseError):
            await transport._ensure_group()

    async def test_stop_does_not_close_injected_client(self):
        client = _client()
        transport = _transport(client)
        await transport.stop()
        client.aclose.assert_not_awaited()


# ===========================================================================
# Message processing
# ===========================================================================


class TestRedisStreamsProcessing:
    async def test_success_acks(self):
        client = _client()
        received = []

        async def consumer(envelope):
            received.append(envelope)

        transport = _transport(client)
        await transport.subscribe(consumer)
        env = EventEnvelope(name="receipt", payload={"id": "abc", "attachmentIds": ["1"]})

        await transport._process_message("1-0", _fields(env))

        assert received[0].payload == {"id": "abc", "attachmentIds": ["1"]}
        client.xack.assert_awaited_once_with("invoicing", "handlers", "1-0")
        assert transport.messages_processed == 1

    async def test_transient_failure_left_pending(self):
        client = _client()

        async def consumer(envelope):
            raise ConnectionError("db down")

        transport = _transport(client, max_delivery_attempts=3)
        await transport.subscribe(consumer)
        env = EventEnvelope(name="receipt", payload={"id": "abc"})

        await transport._process_message("1-0", _fields(env))

        client.xack.assert_not_awaited()
        assert transport.get_error_counts() == {"receipt": 1}
        assert transport.dead_letters == []

    async def test_dead_letter_after_max_attempts(self):
        client = _client()

        async def consumer(envelope):
            raise ConnectionError("db down")

        transport = _transport(client, max_delivery_attempts=2)
        await transport.subscribe(consumer)
        fields = _fields(EventEnvelope(name="receipt", payload={"id": "abc"}))

        await transport._process_message("1-0", fields)
        await transport._process_message("1-0", fields)

        client.xack.assert_awaited_once_with("invoicing", "handlers", "1-0")
        [dead] = transport.dead_letters
        assert dead.attempts == 2
        assert not dead.permanent

    async def test_permanent_failure_dead_lettered_immediately(self):
        client = _client()

        async def consumer(envelope):
            raise NoEventHandlerError(envelope.name)

        transport = _transport(client)
        await transport.subscribe(consumer)

        await transport._process_message("1-0", _fields(EventEnvelope(name="x")))

        client.xack.assert_awaited_once()
        [dead] = transport.dead_letters
        assert dead.permanent
        assert dead.attempts == 1

    async def test_malformed_message_dead_lettered(self):
        client = _client()
        consumer = AsyncMock()
        transport = _transport(client)
        await transport.subscribe(consumer)

        await transport._process_message("1-0", {"_name": "receipt", "_data": "not json"})

        consumer.assert_not_awaited()
        client.xack.assert_awaited_once()
        assert transport.dead_letters[0].error == "deserialization_failed"

    async def test_trimmed_pending_entry_dead_lettered(self):
        client = _client()
        transport = _transport(client)
        await transport.subscribe(AsyncMock())

        await transport._process_message("1-0", None)

        client.xack.assert_awaited_once()
        assert transport.dead_letters[0].name == "unknown"


class TestRedisStreamsPayloadFidelity:
    def test_date_shaped_payload_string_stays_string(self):
        env = EventEnvelope(
            name="invoice-send",
            payload={"sentAt": "2024-06-01T12:00:00.000Z", "dates": ["2024-06-02T00:00:00.000Z"]},
            occurred_at=datetime(2024, 6, 1, 12, tzinfo=timezone.utc),
        )

        decoded = RedisStreamsTransport._deserialize(_fields(env))

        assert decoded is not None
        assert decoded.payload == env.payload
        assert decoded.occurred_at == env.occurred_at

    async def test_handler_with_string_field_accepts_redelivered_payload(self):
        class InvoiceSent(BaseModel):
            sent_at: str = Field(alias="sentAt")

        seen: list[str] = []

        async def record(event, envelope, ctx):
            seen.append(event.sent_at)

        handler = make_event_handler(InvoiceSent, record)
        client = _client()
        transport = _transport(client)

        async def consumer(envelope):
            await handler(envelope, HandlerContext(container=Container(), logger=None))

        await transport.subscribe(consumer)
        env = EventEnvelope(name="invoice-send", payload={"sentAt": "2024-06-01T12:00:00.000Z"})

        await transport._process_message("1-0", _fields(env))

        assert seen == ["2024-06-01T12:00:00.000Z"]
        assert transport.dead_letters == []
        client.xack.assert_awaited_once_with("invoicing", "handlers", "1-0")


class TestRedisStreamsRedeliveryDelay:
    async def test_failed_message_waits_before_reread(self, sim_clock):
        client = _client()

        async def consumer(envelope):
            raise ConnectionError("db down")

        transport = _transport(client, redelivery_delay_ms=500, clock=sim_clock)
        await transport.subscribe(consumer)
        fields = _fields(EventEnvelope(name="receipt", payload={"id": "abc"}))
        pending = [("invoicing", [("1-0", fields), ("2-0", fields)])]

        await transport._process_message("1-0", fields)

        assert transport._due_entries(pending) == [("invoicing", [("2-0", fields)])]
        sim_clock.advance_ms(499)
        assert transport._due_entries(pending) == [("invoicing", [("2-0", fields)])]
        sim_clock.advance_ms(1)
        assert transport._due_entries(pending) == pending

    async def test_delay_grows_per_attempt(self, sim_clock):
        client = _client()

        async def consumer(envelope):
            raise ConnectionError("db down")

        transport = _transport(
            client, max_delivery_attempts=3, redelivery_delay_ms=100, clock=sim_clock,
        )
        await transport.subscribe(consumer)
        fields = _fields(EventEnvelope(name="receipt", payload={"id": "abc"}))
        start = sim_clock.now_ms()

        await transport._process_message("1-0", fields)
        assert transport._retry_at["1-0"] == start + 100
        await transport._process_message("1-0", fields)
        assert transport._retry_at["1-0"] == start + 200

        await transport._process_message("1-0", fields)
        assert "1-0" not in transport._retry_at
        assert transport.dead_letters[0].attempts == 3

    def test_empty_read_has_nothing_due(self):
        transport = _transport(_client())
        assert transport._due_entries([]) == []
        assert transport._due_entries([("invoicing", [])]) == []
