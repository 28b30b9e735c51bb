"""Runtime bootstrap.

All process wiring lives here: ``build_runtime()`` creates a container
with every service bound, registers the command handlers and the event
handler import table, and returns a ``Runtime`` that owns the lifecycle.

    async with build_runtime(load_settings("configs/local.toml")) as runtime:
        await runtime.events.send("receipt", {"id": "abc"})

Tests build a fresh runtime per test and may pass extra ``modules`` to
override any binding.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .common.backoff import BackoffRunner
from .core.clock import IClock, WallClock
from .core.config import EventBusConfig, Settings
from .core.enums import Lifetime, TransportKind
from .cqrs.bus import CqrsBus
from .di.container import Container, Token
from .di.modules import ClassModule, FactoryModule, Module, ValueModule, build_container
from .events.bus import EventBusService
from .events.registry import HandlerRegistry, Loader, import_loader
from .events.scheduler import InMemoryJobRepository, JobScheduler
from .events.transport import EventTransport, MemoryTransport
from .features.invoice_html import GenerateInvoiceHtml, GenerateInvoiceHtmlHandler
from .features.receipt import RECEIPT_INBOX, ReceiptInbox

logger = logging.getLogger(__name__)

SETTINGS = Token("Settings")
EVENT_BUS_CONFIG = Token("EventBusConfig")
BACKOFF_CONFIG = Token("BackoffConfig")
CLOCK = Token("Clock")
EVENT_TRANSPORT = Token("EventTransport")
JOB_REPOSITORY = Token("JobRepository")

# Event name -> handler loader; add an entry per new event type
DEFAULT_EVENT_HANDLERS: dict[str, Loader] = {
    "cron": import_loader("invoicing_runtime.events.scheduler:cron_handler"),
    "receipt": import_loader("invoicing_runtime.features.receipt:handler"),
}

DEFAULT_COMMAND_HANDLERS: list[tuple[Any, ...]] = [
    (GenerateInvoiceHtml, GenerateInvoiceHtmlHandler),
]


def create_transport(config: EventBusConfig, clock: IClock | None = None) -> EventTransport:
    """Create the transport selected by ``config.transport``.

    - memory: in-process queue (tests, local runs)
    - redis: Redis Streams stream named after the bus
    """
    if config.transport == TransportKind.MEMORY:
        return MemoryTransport(
            max_delivery_attempts=config.max_delivery_attempts,
            redelivery_delay_ms=config.redelivery_delay_ms,
            redelivery_backoff_factor=config.redelivery_backoff_factor,
            clock=clock,
        )

    from .events.redis_streams import RedisStreamsTransport

    return RedisStreamsTransport(
        redis_url=config.redis_url,
        stream=config.bus_name,
        group=config.consumer_group,
        max_stream_length=config.max_stream_length,
        block_ms=config.block_ms,
        batch_size=config.batch_size,
        max_delivery_attempts=config.max_delivery_attempts,
        redelivery_delay_ms=config.redelivery_delay_ms,
        redelivery_backoff_factor=config.redelivery_backoff_factor,
        clock=clock,
    )


class Runtime:
    """A wired container plus start/stop of the event transport."""

    def __init__(self, container: Container, settings: Settings) -> None:
        self._container = container
        self._settings = settings
        self._started = False

    @property
    def container(self) -> Container:
        return self._container

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def cqrs(self) -> CqrsBus:
        return self._container.get(CqrsBus)

    @property
    def events(self) -> EventBusService:
        return self._container.get(EventBusService)

    @property
    def registry(self) -> HandlerRegistry:
        return self._container.get(HandlerRegistry)

    @property
    def scheduler(self) -> JobScheduler:
        return self._container.get(JobScheduler)

    @property
    def backoff(self) -> BackoffRunner:
        return self._container.get(BackoffRunner)

    @property
    def transport(self) -> EventTransport:
        return self._container.get(EVENT_TRANSPORT)

    async def init(self, *, consume: bool = True) -> Runtime:
        """Start the transport; with *consume*, deliver events to the registry."""
        if self._started:
            return self
        transport = self.transport
        if consume:
            await transport.subscribe(self.registry.dispatch)
        await transport.start()
        self._started = True
        logger.info(
            "Runtime %s started (transport=%s, consume=%s)",
            self._settings.service_name,
            self._settings.event_bus.transport.value,
            consume,
        )
        return self

    async def dispose(self) -> None:
        """Stop the transport and close every constructed singleton."""
        if self._started:
            # A transport bound as a constant is not closed by the container
            await self.transport.stop()
        await self._container.adispose()
        self._started = False
        logger.info("Runtime %s disposed", self._settings.service_name)

    async def __aenter__(self) -> Runtime:
        return await self.init()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()


def build_runtime(
    settings: Settings | None = None,
    *,
    clock: IClock | None = None,
    event_handlers: Mapping[str, Loader] | None = None,
    command_handlers: Iterable[tuple[Any, ...]] | None = None,
    modules: Iterable[Module] = (),
) -> Runtime:
    """Wire a container for *settings* and return the runtime around it.

    Args:
        settings: Runtime settings (defaults to ``Settings()``).
        clock: Time source for the scheduler (defaults to ``WallClock``).
        event_handlers: Handler import table; defaults to the built-in one.
        command_handlers: ``(command_type, handler_cls[, deps])`` entries.
        modules: Extra bindings applied last, overriding the defaults.
    """
    settings = settings or Settings()
    loaders = dict(DEFAULT_EVENT_HANDLERS if event_handlers is None else event_handlers)

    container = build_container(
        [
            ValueModule(SETTINGS, settings),
            ValueModule(EVENT_BUS_CONFIG, settings.event_bus),
            ValueModule(BACKOFF_CONFIG, settings.backoff),
            ValueModule(CLOCK, clock or WallClock()),
            FactoryModule(
                EVENT_TRANSPORT,
                create_transport,
                deps=[EVENT_BUS_CONFIG, CLOCK],
                lifetime=Lifetime.SINGLETON,
            ),
            ClassModule(
                EventBusService,
                deps={"transport": EVENT_TRANSPORT, "config": EVENT_BUS_CONFIG},
                lifetime=Lifetime.SINGLETON,
            ),
            FactoryModule(
                HandlerRegistry,
                functools.partial(HandlerRegistry, loaders=loaders),
                deps={"container": Container},
                lifetime=Lifetime.SINGLETON,
            ),
            ClassModule(JOB_REPOSITORY, InMemoryJobRepository, lifetime=Lifetime.SINGLETON),
            ClassModule(
                JobScheduler,
                deps={"repository": JOB_REPOSITORY, "bus": EventBusService, "clock": CLOCK},
                lifetime=Lifetime.SINGLETON,
            ),
            ClassModule(
                BackoffRunner,
                deps={"config": BACKOFF_CONFIG, "clock": CLOCK},
                lifetime=Lifetime.SINGLETON,
            ),
            ClassModule(RECEIPT_INBOX, ReceiptInbox, lifetime=Lifetime.SINGLETON),
            *modules,
        ],
        name=settings.service_name,
    )
    container.bind_value(Container, container)

    CqrsBus.for_root(
        container,
        DEFAULT_COMMAND_HANDLERS if command_handlers is None else command_handlers,
    )
    return Runtime(container, settings)
