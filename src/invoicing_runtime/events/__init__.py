"""Named events: publisher, transports, handler registry and scheduled jobs."""

from invoicing_runtime.events.bus import EventBusService
from invoicing_runtime.events.envelope import EventEnvelope
from invoicing_runtime.events.handler import HandlerContext, make_event_handler
from invoicing_runtime.events.registry import HandlerRegistry, import_loader
from invoicing_runtime.events.scheduler import (
    InMemoryJobRepository,
    JobRepository,
    JobScheduler,
    ScheduledJob,
)
from invoicing_runtime.events.transport import DeadLetter, EventTransport, MemoryTransport

__all__ = [
    "DeadLetter",
    "EventBusService",
    "EventEnvelope",
    "EventTransport",
    "HandlerContext",
    "HandlerRegistry",
    "InMemoryJobRepository",
    "JobRepository",
    "JobScheduler",
    "MemoryTransport",
    "ScheduledJob",
    "import_loader",
    "make_event_handler",
]
