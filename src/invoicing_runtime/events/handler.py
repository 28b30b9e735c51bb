"""Typed event handler construction.

``make_event_handler`` turns a function over a validated pydantic model
into the ``(envelope, context)`` callable the handler registry invokes::

    class ReceiptEvent(BaseModel):
        id: str
        attachment_ids: list[str] = Field(default_factory=list, alias="attachmentIds")

    async def _handle(event: ReceiptEvent, envelope, ctx):
        ctx.logger.info("extracting receipt", receipt_id=event.id)

    handler = make_event_handler(ReceiptEvent, _handle)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from invoicing_runtime.core.errors import EventValidationError
from invoicing_runtime.di.container import Container
from invoicing_runtime.observability.logger import get_logger

from .envelope import EventEnvelope

ModelT = TypeVar("ModelT", bound=BaseModel)

EventHandler = Callable[[EventEnvelope, "HandlerContext"], Awaitable[None]]


@dataclass
class HandlerContext:
    """Per-delivery context handed to event handlers."""

    container: Container
    logger: structlog.stdlib.BoundLogger
    attempt: int = 1


def make_event_handler(
    model: type[ModelT],
    fn: Callable[[ModelT, EventEnvelope, HandlerContext], Awaitable[Any]],
) -> EventHandler:
    """Wrap *fn* with payload validation against *model*.

    Validation failures raise ``EventValidationError``, which transports
    treat as permanent.  Errors raised by *fn* propagate unchanged.
    """

    async def handle(envelope: EventEnvelope, context: HandlerContext) -> None:
        log = get_logger(model.__name__).bind(
            event_name=envelope.name, event_id=envelope.event_id,
        )
        log.info(f"Start handler for event {envelope.name}")

        try:
            event = model.model_validate(envelope.payload)
        except ValidationError as exc:
            log.info(f"Event data validation failed for {envelope.name}")
            raise EventValidationError(envelope.name, str(exc)) from exc

        handler_context = HandlerContext(
            container=context.container, logger=log, attempt=context.attempt,
        )
        try:
            await fn(event, envelope, handler_context)
        except Exception:
            log.error(f"Handler failed for event {envelope.name}", exc_info=True)
            raise

    handle.__qualname__ = f"event_handler[{model.__name__}]"
    handle.event_model = model  # type: ignore[attr-defined]
    return handle
