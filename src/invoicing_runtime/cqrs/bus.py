"""Command dispatcher.

Routes a command to the single handler registered for its type.  Handlers
are container bindings, so each execution resolves a handler with its
dependencies injected; the dispatcher itself holds only the mapping.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Iterable, Sequence
from typing import Any, TypeVar

from invoicing_runtime.core.errors import (
    DuplicateHandlerError,
    NoHandlerRegisteredError,
    token_name,
)
from invoicing_runtime.di.container import Container, Deps
from invoicing_runtime.observability.metrics import record_command

from .command import Command

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT")

HandlerSpec = Sequence[Any]  # (command_type, handler_cls) or (command_type, handler_cls, deps)


class CqrsBus:
    """Maps command types to handler tokens and executes commands."""

    def __init__(self, container: Container) -> None:
        self._container = container
        self._handlers: dict[type, Any] = {}

    @classmethod
    def for_root(
        cls,
        container: Container,
        handlers: Iterable[HandlerSpec] = (),
    ) -> CqrsBus:
        """Return the container's bus, creating and binding it on first use.

        Command types already registered to the same handler are skipped,
        so feature modules can call this repeatedly with overlapping lists.
        """
        if container.is_bound(CqrsBus):
            bus = container.get(CqrsBus)
        else:
            bus = cls(container)
            container.bind_value(CqrsBus, bus)

        for spec in handlers:
            command_type, handler_cls, *rest = spec
            deps = rest[0] if rest else ()
            if bus.handler_for(command_type) is handler_cls:
                continue
            bus.register(command_type, handler_cls, deps)
        return bus

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_handler(self, command_type: type[Command], handler_token: Any) -> None:
        """Route *command_type* to the binding at *handler_token*.

        Raises:
            DuplicateHandlerError: if the command type already has a handler.
        """
        existing = self._handlers.get(command_type)
        if existing is not None:
            raise DuplicateHandlerError(command_type, existing, handler_token)
        self._handlers[command_type] = handler_token
        logger.debug(
            "Registered %s handler %s for %s",
            command_type.kind.value,
            token_name(handler_token),
            command_type.__name__,
        )

    def register(
        self,
        command_type: type[Command],
        handler_cls: type,
        deps: Deps = (),
    ) -> None:
        """Bind *handler_cls* (transient) and route *command_type* to it."""
        if command_type in self._handlers:
            raise DuplicateHandlerError(
                command_type, self._handlers[command_type], handler_cls,
            )
        self._container.bind(handler_cls, deps=deps)
        self.register_handler(command_type, handler_cls)

    def handler_for(self, command_type: type[Command]) -> Any | None:
        return self._handlers.get(command_type)

    @property
    def command_types(self) -> list[type[Command]]:
        return list(self._handlers)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, command: Command[Any, ResponseT]) -> ResponseT:
        """Run the registered handler and return its response unchanged.

        Handler exceptions propagate as raised.
        """
        command_type = type(command)
        token = self._handlers.get(command_type)
        if token is None:
            raise NoHandlerRegisteredError(command_type)

        name = command_type.__name__
        kind = command_type.kind.value
        handler = await self._container.aget(token)

        logger.debug("Executing handler for %s", name)
        start = time.monotonic()
        try:
            response = handler.execute(command.request)
            if inspect.isawaitable(response):
                response = await response
        except Exception:
            record_command(name, kind, "error", time.monotonic() - start)
            raise

        record_command(name, kind, "success", time.monotonic() - start)
        logger.debug("Handler for %s executed", name)
        return response
