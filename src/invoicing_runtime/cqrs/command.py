"""Command and handler base types.

A command carries a typed request and declares the response type its
handler produces::

    class GenerateInvoiceHtml(Command[InvoiceHtmlRequest, InvoiceHtmlResponse]):
        pass

    class GenerateInvoiceHtmlHandler(CommandHandler[InvoiceHtmlRequest, InvoiceHtmlResponse]):
        async def execute(self, request: InvoiceHtmlRequest) -> InvoiceHtmlResponse:
            ...

Read-only operations subclass ``Query`` instead; the kind only affects log
and metric labels.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Generic, TypeVar

from invoicing_runtime.core.enums import CommandKind

RequestT = TypeVar("RequestT")
ResponseT = TypeVar("ResponseT")


@dataclass(frozen=True)
class Command(Generic[RequestT, ResponseT]):
    """Immutable request envelope routed to exactly one handler."""

    request: RequestT
    idempotency_key: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    kind: ClassVar[CommandKind] = CommandKind.COMMAND

    def __post_init__(self) -> None:
        # Read-only copy of the caller's mapping
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class Query(Command[RequestT, ResponseT]):
    kind: ClassVar[CommandKind] = CommandKind.QUERY


class CommandHandler(ABC, Generic[RequestT, ResponseT]):
    """Executes the request of one command type."""

    @abstractmethod
    async def execute(self, request: RequestT) -> ResponseT:
        ...
