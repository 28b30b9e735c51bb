"""Tests for the command dispatcher."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from invoicing_runtime.core.enums import CommandKind
from invoicing_runtime.core.errors import (
    DispatchError,
    DuplicateHandlerError,
    NoHandlerRegisteredError,
)
from invoicing_runtime.cqrs import Command, CommandHandler, CqrsBus, Query
from invoicing_runtime.di.container import Token

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TAX_RATE = Token("TaxRate")


class TotalRequest(BaseModel):
    net_cents: int


class TotalResponse(BaseModel):
    gross_cents: int


class ComputeTotal(Command[TotalRequest, TotalResponse]):
    pass


class LookupTotal(Query[TotalRequest, TotalResponse]):
    pass


class ComputeTotalHandler(CommandHandler[TotalRequest, TotalResponse]):
    calls = 0

    def __init__(self, rate: float = 0.19) -> None:
        self.rate = rate

    async def execute(self, request: TotalRequest) -> TotalResponse:
        type(self).calls += 1
        return TotalResponse(gross_cents=round(request.net_cents * (1 + self.rate)))


class FailingHandler(CommandHandler[TotalRequest, TotalResponse]):
    async def execute(self, request: TotalRequest) -> TotalResponse:
        raise ValueError("invoice locked")


@pytest.fixture(autouse=True)
def _reset_calls():
    ComputeTotalHandler.calls = 0


# ===========================================================================
# Commands
# ===========================================================================


class TestCommand:
    def test_command_is_immutable(self):
        cmd = ComputeTotal(TotalRequest(net_cents=100))
        with pytest.raises(AttributeError):
            cmd.request = TotalRequest(net_cents=1)  # type: ignore[misc]

    def test_metadata_defaults(self):
        cmd = ComputeTotal(TotalRequest(net_cents=100))
        assert cmd.idempotency_key is None
        assert cmd.metadata == {}

    def test_metadata_is_read_only(self):
        source = {"tenant": "acme"}
        cmd = ComputeTotal(TotalRequest(net_cents=100), metadata=source)
        with pytest.raises(TypeError):
            cmd.metadata["tenant"] = "other"  # type: ignore[index]
        source["tenant"] = "changed"
        assert cmd.metadata == {"tenant": "acme"}

    def test_kinds(self):
        assert ComputeTotal.kind is CommandKind.COMMAND
        assert LookupTotal.kind is CommandKind.QUERY


# ===========================================================================
# Dispatch
# ===========================================================================


class TestCqrsBus:
    async def test_execute_returns_handler_response(self, container):
        bus = CqrsBus(container)
        bus.register(ComputeTotal, ComputeTotalHandler)
        response = await bus.execute(ComputeTotal(TotalRequest(net_cents=1000)))
        assert response == TotalResponse(gross_cents=1190)

    async def test_handler_invoked_exactly_once(self, container):
        bus = CqrsBus(container)
        bus.register(ComputeTotal, ComputeTotalHandler)
        await bus.execute(ComputeTotal(TotalRequest(net_cents=1)))
        assert ComputeTotalHandler.calls == 1

    async def test_handler_dependencies_injected(self, container):
        container.bind_value(TAX_RATE, 0.07)
        bus = CqrsBus(container)
        bus.register(ComputeTotal, ComputeTotalHandler, deps=[TAX_RATE])
        response = await bus.execute(ComputeTotal(TotalRequest(net_cents=100)))
        assert response.gross_cents == 107

    async def test_miss_raises_no_handler(self, container):
        bus = CqrsBus(container)
        with pytest.raises(NoHandlerRegisteredError) as exc_info:
            await bus.execute(ComputeTotal(TotalRequest(net_cents=1)))
        assert exc_info.value.command_type is ComputeTotal
        assert isinstance(exc_info.value, DispatchError)

    async def test_lookup_is_by_exact_type(self, container):
        bus = CqrsBus(container)
        bus.register(ComputeTotal, ComputeTotalHandler)
        with pytest.raises(NoHandlerRegisteredError):
            await bus.execute(LookupTotal(TotalRequest(net_cents=1)))

    async def test_handler_errors_propagate_unchanged(self, container):
        bus = CqrsBus(container)
        bus.register(ComputeTotal, FailingHandler)
        with pytest.raises(ValueError, match="invoice locked"):
            await bus.execute(ComputeTotal(TotalRequest(net_cents=1)))

    def test_duplicate_registration_raises(self, container):
        bus = CqrsBus(container)
        bus.register(ComputeTotal, ComputeTotalHandler)
        with pytest.raises(DuplicateHandlerError):
            bus.register(ComputeTotal, FailingHandler)
        assert bus.handler_for(ComputeTotal) is ComputeTotalHandler

    def test_register_handler_with_existing_binding(self, container):
        token = Token("TotalHandler")
        container.bind(token, ComputeTotalHandler)
        bus = CqrsBus(container)
        bus.register_handler(ComputeTotal, token)
        with pytest.raises(DuplicateHandlerError):
            bus.register_handler(ComputeTotal, token)

    async def test_query_dispatch(self, container):
        bus = CqrsBus(container)
        bus.register(LookupTotal, ComputeTotalHandler)
        response = await bus.execute(LookupTotal(TotalRequest(net_cents=100)))
        assert response.gross_cents == 119


class TestForRoot:
    def test_creates_and_binds_bus(self, container):
        bus = CqrsBus.for_root(container, [(ComputeTotal, ComputeTotalHandler)])
        assert container.get(CqrsBus) is bus
        assert bus.handler_for(ComputeTotal) is ComputeTotalHandler

    def test_reuses_bound_bus(self, container):
        first = CqrsBus.for_root(container, [(ComputeTotal, ComputeTotalHandler)])
        second = CqrsBus.for_root(container, [(LookupTotal, ComputeTotalHandler)])
        assert first is second
        assert set(second.command_types) == {ComputeTotal, LookupTotal}

    def test_repeated_registration_of_same_handler_skipped(self, container):
        CqrsBus.for_root(container, [(ComputeTotal, ComputeTotalHandler)])
        bus = CqrsBus.for_root(container, [(ComputeTotal, ComputeTotalHandler)])
        assert bus.command_types == [ComputeTotal]

    def test_conflicting_handler_raises(self, container):
        CqrsBus.for_root(container, [(ComputeTotal, ComputeTotalHandler)])
        with pytest.raises(DuplicateHandlerError):
            CqrsBus.for_root(container, [(ComputeTotal, FailingHandler)])

    async def test_deps_in_handler_spec(self, container):
        container.bind_value(TAX_RATE, 0.0)
        bus = CqrsBus.for_root(container, [(ComputeTotal, ComputeTotalHandler, [TAX_RATE])])
        response = await bus.execute(ComputeTotal(TotalRequest(net_cents=500)))
        assert response.gross_cents == 500
