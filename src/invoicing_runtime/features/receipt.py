"""``receipt`` event: an uploaded or emailed receipt awaiting extraction.

Extraction itself lives outside the runtime; this feature records each
receipt exactly once per receipt id so redelivered events are harmless.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from invoicing_runtime.core.ids import idempotency_key
from invoicing_runtime.di.container import Token
from invoicing_runtime.events.envelope import EventEnvelope
from invoicing_runtime.events.handler import HandlerContext, make_event_handler

logger = logging.getLogger(__name__)

RECEIPT_INBOX = Token("ReceiptInbox")


class ReceiptEvent(BaseModel):
    id: str
    is_breakdown: bool = Field(default=False, alias="isBreakdown")
    original_event_id: str | None = Field(default=None, alias="originalEventId")
    attachment_ids: list[str] = Field(default_factory=list, alias="attachmentIds")
    email_text: str | None = Field(default=None, alias="emailText")
    currency: str = "EUR"  # ISO 4217

    model_config = {"populate_by_name": True}


class ReceiptInbox:
    """Receipts accepted for extraction, keyed by idempotency key."""

    def __init__(self) -> None:
        self._received: dict[str, ReceiptEvent] = {}

    def accept(self, event: ReceiptEvent) -> bool:
        """Record *event*; returns False if the receipt was already recorded."""
        key = idempotency_key("receipt", event.id)
        if key in self._received:
            logger.info("Receipt %s already recorded, skipping", event.id)
            return False
        self._received[key] = event
        return True

    def get(self, receipt_id: str) -> ReceiptEvent | None:
        return self._received.get(idempotency_key("receipt", receipt_id))

    def __len__(self) -> int:
        return len(self._received)


async def _handle(event: ReceiptEvent, envelope: EventEnvelope, ctx: HandlerContext) -> None:
    inbox: ReceiptInbox = await ctx.container.aget(RECEIPT_INBOX)
    if inbox.accept(event):
        ctx.logger.info(
            "Receipt recorded",
            receipt_id=event.id,
            attachments=len(event.attachment_ids),
        )


handler = make_event_handler(ReceiptEvent, _handle)
