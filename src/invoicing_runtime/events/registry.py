"""Event name → handler import table.

Handlers are registered as *loaders*: zero-argument callables (sync or
async) returning the handler.  A loader runs on the first delivery of its
event, so a consumer process only imports the feature code it actually
receives events for.

    registry.register("receipt", import_loader("invoicing_runtime.features.receipt:handler"))
"""

from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from invoicing_runtime.core.errors import NoEventHandlerError
from invoicing_runtime.di.container import Container
from invoicing_runtime.observability.logger import (
    bind_event_context,
    clear_event_context,
    get_logger,
)

from .envelope import EventEnvelope
from .handler import EventHandler, HandlerContext

logger = logging.getLogger(__name__)

Loader = Callable[[], EventHandler | Awaitable[EventHandler]]


def import_loader(path: str) -> Loader:
    """Loader importing ``"package.module:attribute"`` when first called."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'package.module:attribute', got {path!r}")

    def load() -> EventHandler:
        module = importlib.import_module(module_name)
        return getattr(module, attr)

    load.__qualname__ = f"import_loader({path})"
    return load


class HandlerRegistry:
    """Resolves event names to handlers at delivery time."""

    def __init__(
        self,
        container: Container,
        loaders: Mapping[str, Loader] | None = None,
    ) -> None:
        self._container = container
        self._loaders: dict[str, Loader] = dict(loaders or {})
        self._resolved: dict[str, EventHandler] = {}

    def register(self, name: str, loader: Loader) -> None:
        """Add or replace the import entry for *name*."""
        self._loaders[name] = loader
        self._resolved.pop(name, None)

    def names(self) -> list[str]:
        return sorted(self._loaders)

    def __contains__(self, name: object) -> bool:
        return name in self._loaders

    async def resolve(self, name: str) -> EventHandler:
        """Materialise (once) and return the handler for *name*.

        Raises:
            NoEventHandlerError: if no import entry exists for *name*.
        """
        handler = self._resolved.get(name)
        if handler is not None:
            return handler

        loader = self._loaders.get(name)
        if loader is None:
            raise NoEventHandlerError(name)

        result: Any = loader()
        if inspect.isawaitable(result):
            result = await result
        self._resolved[name] = result
        logger.debug("Loaded handler for event %s", name)
        return result

    async def dispatch(self, envelope: EventEnvelope) -> None:
        """Run the handler for *envelope*; used as the transport consumer."""
        bind_event_context(envelope.name, envelope.event_id, envelope.trace_id)
        try:
            handler = await self.resolve(envelope.name)
            context = HandlerContext(
                container=self._container,
                logger=get_logger(envelope.name).bind(event_id=envelope.event_id),
            )
            await handler(envelope, context)
        finally:
            clear_event_context()
