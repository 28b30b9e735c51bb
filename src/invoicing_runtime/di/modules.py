"""Declarative container wiring.

A module list describes every binding of a process (or of a test) in one
place; ``build_container`` applies them in order, so later entries
override earlier ones exactly like repeated ``bind()`` calls would.

Example::

    container = build_container([
        ValueModule(SETTINGS, settings),
        ClassModule(EVENT_TRANSPORT, MemoryTransport, lifetime=Lifetime.SINGLETON),
        ClassModule(
            EventBusService,
            deps={"transport": EVENT_TRANSPORT, "settings": SETTINGS},
            lifetime=Lifetime.SINGLETON,
        ),
    ])
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from invoicing_runtime.core.enums import Lifetime

from .container import Container, Deps


@dataclass(frozen=True)
class ValueModule:
    """Bind a constant value."""

    token: Any
    value: Any


@dataclass(frozen=True)
class ClassModule:
    """Bind a class, constructed with the declared dependencies."""

    token: Any
    cls: type | None = None
    deps: Deps = ()
    lifetime: Lifetime = Lifetime.TRANSIENT
    when: Callable[[], bool] | None = None


@dataclass(frozen=True)
class FactoryModule:
    """Bind a (sync or async) factory function."""

    token: Any
    factory: Callable[..., Any]
    deps: Deps = ()
    lifetime: Lifetime = Lifetime.TRANSIENT
    when: Callable[[], bool] | None = None


Module = ValueModule | ClassModule | FactoryModule


def apply_modules(container: Container, modules: Iterable[Module]) -> Container:
    for module in modules:
        if isinstance(module, ValueModule):
            container.bind_value(module.token, module.value)
        elif isinstance(module, ClassModule):
            container.bind(
                module.token,
                module.cls,
                deps=module.deps,
                lifetime=module.lifetime,
                when=module.when,
            )
        elif isinstance(module, FactoryModule):
            container.bind(
                module.token,
                module.factory,
                deps=module.deps,
                lifetime=module.lifetime,
                when=module.when,
            )
        else:
            raise TypeError(f"Unsupported module entry: {module!r}")
    return container


def build_container(
    modules: Iterable[Module],
    *,
    parent: Container | None = None,
    name: str = "default",
) -> Container:
    """Create a container and apply *modules* to it."""
    return apply_modules(Container(parent=parent, name=name), modules)
