"""Dependency injection: tokens, bindings, container and module wiring."""

from invoicing_runtime.di.container import Binding, Container, Token
from invoicing_runtime.di.modules import (
    ClassModule,
    FactoryModule,
    ValueModule,
    apply_modules,
    build_container,
)

__all__ = [
    "Binding",
    "ClassModule",
    "Container",
    "FactoryModule",
    "Token",
    "ValueModule",
    "apply_modules",
    "build_container",
]
