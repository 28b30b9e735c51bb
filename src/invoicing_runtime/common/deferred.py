"""Externally settled future.

A ``Deferred`` hands out an awaitable ``future`` while the code that owns
the handle decides later, from a callback or another task, whether it
succeeded or failed.

Settlement is exactly-once: a second ``settle()`` or ``fail()`` raises
``DeferredAlreadySettledError`` rather than being silently ignored, so a
double completion shows up as a bug at its source.
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from typing import Any, Generic, TypeVar

from invoicing_runtime.core.errors import DeferredAlreadySettledError

T = TypeVar("T")


class Deferred(Generic[T]):
    """Settable handle around an ``asyncio.Future``.

    Must be created while an event loop is running.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def future(self) -> asyncio.Future[T]:
        return self._future

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, value: T) -> None:
        """Complete the future with *value*."""
        if self._future.done():
            raise DeferredAlreadySettledError("Deferred already settled")
        self._future.set_result(value)

    def fail(self, error: BaseException) -> None:
        """Complete the future with *error*."""
        if self._future.done():
            raise DeferredAlreadySettledError("Deferred already settled")
        self._future.set_exception(error)

    def __await__(self) -> Generator[Any, None, T]:
        return self._future.__await__()
