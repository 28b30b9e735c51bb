"""Publisher side of the event bus.

``EventBusService`` wraps a payload in an ``EventEnvelope`` and hands it
to the injected transport.  It never looks at the handler registry: an
event with no handler is accepted here and fails at consumption.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any

from invoicing_runtime.core.config import EventBusConfig
from invoicing_runtime.observability.logger import get_trace_id
from invoicing_runtime.observability.metrics import record_event_sent

from .envelope import EventEnvelope
from .transport import EventTransport

logger = logging.getLogger(__name__)


class EventBusService:
    """Sends named events through an ``EventTransport``."""

    def __init__(
        self,
        transport: EventTransport,
        config: EventBusConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._config = config or EventBusConfig()
        self._sleep = sleep

    @property
    def transport(self) -> EventTransport:
        return self._transport

    async def send(
        self,
        event_name: str,
        payload: Mapping[str, Any],
        *,
        source: str | None = None,
        resources: Sequence[str] | None = None,
    ) -> str:
        """Publish one event and return the transport's id for it.

        Args:
            event_name: Routing name, e.g. ``"receipt"`` or ``"invoice.send"``.
            payload: JSON-compatible mapping; datetimes are allowed.
            source: Origin label (defaults to the configured default source).
            resources: Optional resource identifiers attached to the event.
        """
        envelope = EventEnvelope(
            name=event_name,
            payload=dict(payload),
            source=source or self._config.default_source,
            resources=list(resources or []),
            trace_id=get_trace_id(),
        )
        logger.info(
            "Sending event %s to bus %s (source=%s)",
            event_name,
            self._config.bus_name,
            envelope.source,
        )

        event_id = await self._transport.enqueue(envelope)

        record_event_sent(event_name)
        logger.info("Event sent %s id=%s", event_name, event_id)
        return event_id

    async def send_spaced(
        self,
        events: Iterable[tuple[str, Mapping[str, Any]]],
        interval_ms: float,
        *,
        source: str | None = None,
    ) -> list[str]:
        """Send *events* in order, waiting *interval_ms* between consecutive sends."""
        if interval_ms < 0:
            raise ValueError("interval_ms must be >= 0")
        ids: list[str] = []
        for index, (name, payload) in enumerate(events):
            if index:
                await self._sleep(interval_ms / 1000.0)
            ids.append(await self.send(name, payload, source=source))
        return ids
