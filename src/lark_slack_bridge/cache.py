"""Time-bounded caches with single-flight population.

Each cache has a name, a fetch callable and a clock. A read past an entry's
``expires_at`` is a miss; concurrent misses for one key share a single
upstream fetch and all callers observe the same value or the same error.
Entries are refreshed lazily on access, never by a background timer.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

import anyio

from .errors import BridgeError, UpstreamLookupTimeout
from .logging import get_logger

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[V]):
    value: V
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class _Flight(Generic[V]):
    __slots__ = ("done", "value", "error")

    def __init__(self) -> None:
        self.done = anyio.Event()
        self.value: V | None = None
        self.error: BaseException | None = None


class TTLCache(Generic[K, V]):
    def __init__(
        self,
        name: str,
        fetch: Callable[[K], Awaitable[V]],
        *,
        ttl_s: float,
        timeout_s: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self._fetch = fetch
        self._ttl_s = ttl_s
        self._timeout_s = timeout_s
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._inflight: dict[K, _Flight[V]] = {}

    def peek(self, key: K, *, allow_stale: bool = False) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if allow_stale or entry.is_fresh(self._clock()):
            return entry.value
        return None

    def set(self, key: K, value: V) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self._ttl_s)

    def invalidate(self, key: K | None = None) -> None:
        if key is None:
            self._entries.clear()
            return
        self._entries.pop(key, None)

    async def get(self, key: K) -> V:
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.value

        flight = self._inflight.get(key)
        if flight is not None:
            await flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.value  # type: ignore[return-value]

        flight = _Flight()
        self._inflight[key] = flight
        try:
            value = await self._fetch_bounded(key)
        except Exception as exc:
            flight.error = exc
            raise
        except BaseException:
            flight.error = BridgeError(f"{self.name} lookup for {key!r} was cancelled")
            raise
        else:
            self.set(key, value)
            flight.value = value
            return value
        finally:
            self._inflight.pop(key, None)
            flight.done.set()

    async def _fetch_bounded(self, key: K) -> V:
        logger.debug("cache.fetch", cache=self.name, key=str(key))
        if self._timeout_s is None:
            return await self._fetch(key)
        try:
            with anyio.fail_after(self._timeout_s):
                return await self._fetch(key)
        except TimeoutError:
            logger.warning(
                "cache.fetch_timeout",
                cache=self.name,
                key=str(key),
                timeout_s=self._timeout_s,
            )
            raise UpstreamLookupTimeout(self.name, key, self._timeout_s) from None
