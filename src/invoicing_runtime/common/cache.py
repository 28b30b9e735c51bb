"""In-memory TTL memoisation for async operations.

The cache key is derived by a caller-supplied ``get_key`` function that
receives the same arguments as the wrapped operation and returns a short
sequence of primitives; the parts are joined with ``separator``.

Capacity
--------
Entries are only dropped when read after expiry.  There is no size bound
and no background sweep, so a key space that keeps growing (e.g. one key
per invoice id) grows the cache for the life of the process.  Keep keys
to bounded domains such as category or template ids.

Concurrency
-----------
Lookups and stores are each done under a lock, but the wrapped call is
not: two concurrent misses for the same key both invoke the operation and
the later store wins.  Pass ``single_flight=True`` to make concurrent
misses share one in-flight call instead.

Usage::

    class ExpenseResolver:
        @cached(get_key=lambda expense: [expense.category_id], ttl=60)
        async def category(self, expense):
            ...
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from invoicing_runtime.common.deferred import Deferred
from invoicing_runtime.core.clock import IClock, WallClock
from invoicing_runtime.observability.metrics import record_cache_lookup

logger = logging.getLogger(__name__)

T = TypeVar("T")

KeyPart = str | int | float | bool | None


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at_ms: int


class TTLMemoCache(Generic[T]):
    """Memoises an async operation per derived key for ``ttl`` seconds.

    Parameters
    ----------
    fn:
        The async operation being wrapped.
    get_key:
        Maps the call arguments to the key parts.
    ttl:
        Lifetime of an entry in seconds, rounded to whole milliseconds
        (at least 1 ms).  It is measured from the start of the call that
        produced the value, so a slow call does not extend its entry.
    separator:
        String placed between key parts.
    clock:
        Time source; defaults to ``WallClock``.
    single_flight:
        De-duplicate concurrent misses for the same key.
    """

    def __init__(
        self,
        fn: Callable[..., Awaitable[T]],
        *,
        get_key: Callable[..., Sequence[KeyPart]],
        ttl: float,
        separator: str = "::",
        clock: IClock | None = None,
        single_flight: bool = False,
        name: str | None = None,
    ) -> None:
        ttl_ms = round(ttl * 1000)
        if ttl_ms < 1:
            raise ValueError("ttl must be at least 1 ms")
        self._fn = fn
        self._get_key = get_key
        self._ttl_ms = ttl_ms
        self._separator = separator
        self._clock = clock or WallClock()
        self._single_flight = single_flight
        self.name = name or getattr(fn, "__qualname__", "cache")
        self._entries: dict[str, CacheEntry[T]] = {}
        self._inflight: dict[str, Deferred[T]] = {}
        self._lock = threading.Lock()

    def key_for(self, *args: Any, **kwargs: Any) -> str:
        return self._separator.join(
            "" if part is None else str(part) for part in self._get_key(*args, **kwargs)
        )

    async def invoke(self, *args: Any, **kwargs: Any) -> T:
        key = self.key_for(*args, **kwargs)
        return await self.get_or_call(key, functools.partial(self._fn, *args, **kwargs))

    __call__ = invoke

    async def get_or_call(self, key: str, call: Callable[[], Awaitable[T]]) -> T:
        """Return the live entry for *key*, or populate it from *call*."""
        started_ms = self._clock.now_ms()
        hit, value = self._lookup(key, started_ms)
        record_cache_lookup(self.name, hit)
        if hit:
            return value  # type: ignore[return-value]

        if not self._single_flight:
            result = await call()
            self._store(key, result, started_ms)
            return result

        pending = self._inflight.get(key)
        if pending is not None:
            return await pending

        deferred: Deferred[T] = Deferred()
        self._inflight[key] = deferred
        try:
            result = await call()
        except BaseException as exc:
            deferred.fail(exc)
            # Retrieved here so an unobserved failure is not logged by asyncio
            deferred.future.exception()
            raise
        else:
            self._store(key, result, started_ms)
            deferred.settle(result)
            return result
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------

    def _lookup(self, key: str, now: int | None = None) -> tuple[bool, T | None]:
        if now is None:
            now = self._clock.now_ms()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if entry.expires_at_ms > now:
                return True, entry.value
            del self._entries[key]
            return False, None

    def _store(self, key: str, value: T, started_ms: int) -> None:
        # Expiry counts from when the call started, not when it returned
        expires = started_ms + self._ttl_ms
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at_ms=expires)


def cached(
    *,
    get_key: Callable[..., Sequence[KeyPart]],
    ttl: float,
    separator: str = "::",
    clock: IClock | None = None,
    single_flight: bool = False,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Method decorator backed by one ``TTLMemoCache`` per decorated method.

    ``get_key`` receives the method arguments *without* ``self``; the cache
    is shared across every instance of the class.  The cache object is
    exposed as ``wrapper.cache``.
    """

    def decorator(method: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        cache: TTLMemoCache[T] = TTLMemoCache(
            method,
            get_key=get_key,
            ttl=ttl,
            separator=separator,
            clock=clock,
            single_flight=single_flight,
        )

        @functools.wraps(method)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> T:
            key = cache.key_for(*args, **kwargs)
            return await cache.get_or_call(
                key, functools.partial(method, self, *args, **kwargs)
            )

        wrapper.cache = cache  # type: ignore[attr-defined]
        return wrapper

    return decorator
