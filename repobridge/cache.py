"""In-process TTL cache and single-flight guard shared by provider clients."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


@dataclass
class CacheEntry(Generic[T]):
    value: T
    written_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.written_at >= self.ttl


class TTLCache(Generic[T]):
    """Key/value store where reads after ``ttl`` seconds behave as misses.

    Writes overwrite unconditionally. ``clock`` is injectable so tests can
    simulate elapsed time.
    """

    def __init__(
        self, default_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[T]] = {}

    def get(self, key: Hashable, default: Any = None) -> T | Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.expired(self._clock()):
            del self._entries[key]
            return default
        return entry.value

    def put(self, key: Hashable, value: T, ttl: float | None = None) -> None:
        self._entries[key] = CacheEntry(
            value=value,
            written_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for e in self._entries.values() if not e.expired(now))


class _Flight:
    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task
        self.waiters = 0


class SingleFlight:
    """Collapses concurrent identical calls into one in-flight task.

    A waiter that is cancelled only detaches itself; the shared task is
    cancelled once no waiters remain.
    """

    def __init__(self) -> None:
        self._flights: dict[Hashable, _Flight] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._flights

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        flight = self._flights.get(key)
        if flight is None:
            flight = _Flight(asyncio.ensure_future(fn()))
            self._flights[key] = flight
            flight.task.add_done_callback(lambda _t, k=key, f=flight: self._forget(k, f))
        else:
            logger.debug("Joining in-flight call for %s", key)
        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if not flight.task.done() and flight.waiters == 1:
                flight.task.cancel()
            raise
        finally:
            flight.waiters -= 1

    def _forget(self, key: Hashable, flight: _Flight) -> None:
        if self._flights.get(key) is flight:
            del self._flights[key]
