"""Dependency injection container.

Services are registered explicitly against a *token*: a string name, a
``Token`` symbol or a type, together with the tokens of their own
constructor dependencies.  Nothing is inferred from annotations, so the
wiring of a process is fully described by the bootstrap code that calls
``bind()``.

Usage::

    container = Container()
    container.bind_value(SETTINGS, settings)
    container.bind_singleton(EVENT_TRANSPORT, MemoryTransport)
    container.bind(
        EventBusService,
        lifetime=Lifetime.SINGLETON,
        deps={"transport": EVENT_TRANSPORT, "settings": SETTINGS},
    )

    bus = container.get(EventBusService)

Resolution rules
----------------
- Singleton bindings are constructed at most once per container; the
  first construction is single-flight under concurrent resolution.
- Transient bindings are constructed on every resolution.
- Constant bindings always return the bound value.
- The declared dependency graph is checked for cycles before anything is
  constructed, so a cycle fails with ``CyclicDependencyError`` instead of
  recursing or deadlocking.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from invoicing_runtime.core.enums import Lifetime
from invoicing_runtime.core.errors import (
    AsyncFactoryError,
    CyclicDependencyError,
    DuplicateBindingError,
    UnboundTokenError,
    token_name,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Deps = Sequence[Any] | Mapping[str, Any]


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


_MISSING: Any = _Missing()


class Token:
    """Symbolic binding key.

    Two tokens are equal only if they are the same object, so separate
    modules can use the same display name without colliding.
    """

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"Token({self.name!r})"


@dataclass(frozen=True)
class Binding:
    """How a token produces its instance."""

    token: Any
    factory: Callable[..., Any] | None = None
    value: Any = _MISSING
    lifetime: Lifetime = Lifetime.TRANSIENT
    deps: Deps = field(default_factory=tuple)

    @property
    def is_constant(self) -> bool:
        return self.value is not _MISSING

    @property
    def is_async(self) -> bool:
        return self.factory is not None and inspect.iscoroutinefunction(self.factory)

    def dependency_tokens(self) -> list[Any]:
        if isinstance(self.deps, Mapping):
            return list(self.deps.values())
        return list(self.deps)


class Container:
    """Token → binding registry with singleton caching.

    Parameters
    ----------
    parent:
        Optional parent container.  Bindings missing here are looked up in
        the parent chain; singletons are always cached in the container
        that resolved them, so a child never mutates its parent.
    name:
        Label used in log messages.
    """

    def __init__(self, parent: Container | None = None, name: str = "default") -> None:
        self._parent = parent
        self._name = name
        self._bindings: dict[Any, Binding] = {}
        self._singletons: dict[Any, Any] = {}
        self._construction_order: list[Any] = []
        self._lock = threading.RLock()
        self._async_locks: dict[Any, asyncio.Lock] = {}

    @property
    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def bind(
        self,
        token: Any,
        factory: Callable[..., Any] | None = None,
        *,
        value: Any = _MISSING,
        lifetime: Lifetime = Lifetime.TRANSIENT,
        deps: Deps = (),
        strict: bool = False,
        when: Callable[[], bool] | None = None,
    ) -> Container:
        """Register a factory or constant under *token*.

        When neither *factory* nor *value* is given and *token* is a class,
        the class itself is the factory.  Returns ``self`` for chaining.

        Raises
        ------
        DuplicateBindingError
            If *strict* is set and *token* is already bound here.
        """
        if when is not None and not when():
            logger.debug("Skipping binding for %s: condition not met", token_name(token))
            return self

        if value is _MISSING and factory is None:
            if not inspect.isclass(token):
                raise TypeError(
                    f"bind({token_name(token)}) needs a factory or a value"
                )
            factory = token
        if value is not _MISSING and factory is not None:
            raise TypeError("bind() accepts either a factory or a value, not both")
        if isinstance(deps, str):
            raise TypeError("deps must be a sequence or mapping of tokens, not a str")

        with self._lock:
            if token in self._bindings:
                if strict:
                    raise DuplicateBindingError(token)
                logger.debug("Overriding binding for %s", token_name(token))
                self._forget_instance(token)

            self._bindings[token] = Binding(
                token=token,
                factory=factory,
                value=value,
                lifetime=lifetime,
                deps=deps,
            )
        return self

    def bind_singleton(
        self,
        token: Any,
        factory: Callable[..., Any] | None = None,
        *,
        deps: Deps = (),
        strict: bool = False,
    ) -> Container:
        return self.bind(token, factory, lifetime=Lifetime.SINGLETON, deps=deps, strict=strict)

    def bind_value(self, token: Any, value: Any, *, strict: bool = False) -> Container:
        return self.bind(token, value=value, strict=strict)

    def unbind(self, token: Any) -> None:
        with self._lock:
            if token not in self._bindings:
                raise UnboundTokenError(token)
            del self._bindings[token]
            self._forget_instance(token)

    def is_bound(self, token: Any) -> bool:
        return self._find_binding(token) is not None

    def create_child(self, name: str | None = None) -> Container:
        """Child container that inherits bindings and may override them."""
        return Container(parent=self, name=name or f"{self._name}.child")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def get(self, token: Any) -> Any:
        """Resolve *token* synchronously.

        Raises
        ------
        UnboundTokenError
            If no binding exists for *token* or one of its dependencies.
        CyclicDependencyError
            If the declared dependency graph contains a cycle.
        AsyncFactoryError
            If a factory on the path is a coroutine function.
        """
        self._check_graph(token)
        return self._resolve(token)

    async def aget(self, token: Any) -> Any:
        """Resolve *token*, awaiting asynchronous factories."""
        self._check_graph(token)
        return await self._aresolve(token)

    def create(self, constructor: Callable[..., T], deps: Deps = ()) -> T:
        """Construct an ad hoc instance with injected dependencies.

        The constructor is bound to an anonymous transient token for the
        duration of the call.
        """
        anon = Token(f"anonymous:{token_name(constructor)}")
        self.bind(anon, constructor, deps=deps)
        try:
            return self.get(anon)
        finally:
            self.unbind(anon)

    async def acreate(self, constructor: Callable[..., Any], deps: Deps = ()) -> Any:
        anon = Token(f"anonymous:{token_name(constructor)}")
        self.bind(anon, constructor, deps=deps)
        try:
            return await self.aget(anon)
        finally:
            self.unbind(anon)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Close constructed singletons in reverse construction order."""
        with self._lock:
            tokens = list(reversed(self._construction_order))
            for tok in tokens:
                instance = self._singletons.get(tok)
                close = getattr(instance, "close", None)
                if callable(close) and not inspect.iscoroutinefunction(close):
                    try:
                        close()
                    except Exception:
                        logger.exception("Error closing %s", token_name(tok))
            self._singletons.clear()
            self._construction_order.clear()

    async def adispose(self) -> None:
        """Async variant of ``dispose()``; prefers ``aclose()`` when present."""
        tokens = list(reversed(self._construction_order))
        for tok in tokens:
            instance = self._singletons.get(tok)
            close = getattr(instance, "aclose", None) or getattr(instance, "close", None)
            if not callable(close):
                continue
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error closing %s", token_name(tok))
        with self._lock:
            self._singletons.clear()
            self._construction_order.clear()
            self._async_locks.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_binding(self, token: Any) -> Binding | None:
        container: Container | None = self
        while container is not None:
            binding = container._bindings.get(token)
            if binding is not None:
                return binding
            container = container._parent
        return None

    def _require_binding(self, token: Any) -> Binding:
        binding = self._find_binding(token)
        if binding is None:
            raise UnboundTokenError(token)
        return binding

    def _check_graph(self, root: Any) -> None:
        """Depth-first walk of declared deps; raises on unbound or cyclic."""
        done: set[Any] = set()
        path: list[Any] = []

        def visit(token: Any) -> None:
            if token in path:
                raise CyclicDependencyError(path[path.index(token):] + [token])
            if token in done:
                return
            binding = self._require_binding(token)
            path.append(token)
            for dep in binding.dependency_tokens():
                visit(dep)
            path.pop()
            done.add(token)

        visit(root)

    def _resolve(self, token: Any) -> Any:
        binding = self._require_binding(token)
        if binding.is_constant:
            return binding.value
        if binding.is_async:
            raise AsyncFactoryError(token)
        if binding.lifetime is Lifetime.TRANSIENT:
            return self._construct(binding)

        with self._lock:
            if token in self._singletons:
                return self._singletons[token]
            instance = self._construct(binding)
            if inspect.isawaitable(instance):
                raise AsyncFactoryError(token)
            self._remember(token, instance)
            return instance

    async def _aresolve(self, token: Any) -> Any:
        binding = self._require_binding(token)
        if binding.is_constant:
            return binding.value
        if binding.lifetime is Lifetime.TRANSIENT:
            return await self._aconstruct(binding)

        if token in self._singletons:
            return self._singletons[token]
        lock = self._async_locks.setdefault(token, asyncio.Lock())
        async with lock:
            # Another task may have finished construction while we waited
            if token in self._singletons:
                return self._singletons[token]
            instance = await self._aconstruct(binding)
            with self._lock:
                self._remember(token, instance)
            return instance

    def _construct(self, binding: Binding) -> Any:
        assert binding.factory is not None
        if isinstance(binding.deps, Mapping):
            kwargs = {name: self._resolve(dep) for name, dep in binding.deps.items()}
            return binding.factory(**kwargs)
        args = [self._resolve(dep) for dep in binding.deps]
        return binding.factory(*args)

    async def _aconstruct(self, binding: Binding) -> Any:
        assert binding.factory is not None
        if isinstance(binding.deps, Mapping):
            kwargs = {name: await self._aresolve(dep) for name, dep in binding.deps.items()}
            result = binding.factory(**kwargs)
        else:
            args = [await self._aresolve(dep) for dep in binding.deps]
            result = binding.factory(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _remember(self, token: Any, instance: Any) -> None:
        self._singletons[token] = instance
        self._construction_order.append(token)
        logger.debug(
            "Constructed singleton %s in container %s", token_name(token), self._name,
        )

    def _forget_instance(self, token: Any) -> None:
        if token in self._singletons:
            del self._singletons[token]
            self._construction_order.remove(token)
        self._async_locks.pop(token, None)
