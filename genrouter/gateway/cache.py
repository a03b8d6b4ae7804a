"""Result Cache — TTL store with request coalescing.

``get_or_compute`` is an atomic get-or-reserve: on a miss exactly one shared
"flight" task is started for the fingerprint and every concurrent caller
with the same fingerprint subscribes to it instead of dispatching on its own.

  - Success: the entry is written (TTL from creation) and every subscriber
    gets the same response.
  - Failure: nothing is cached. The caller that started the flight gets the
    error; the other subscribers re-enter get-or-reserve and retry on their own.
  - Cancellation: a cancelled subscriber just unsubscribes. The flight keeps
    running for whoever is still waiting and is cancelled only when the last
    subscriber leaves, at which point its reservation is dropped at once.
    Subscribers of a flight cancelled from elsewhere retry.
  - Stored entries and returned responses carry their own copy of the
    structured payload.

All bookkeeping happens between awaits on the event loop, so no lock is held
across the upstream call.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import replace

from genrouter.gateway.types import CacheEntry, CanonicalResponse

logger = logging.getLogger(__name__)


def _detached(response: CanonicalResponse) -> CanonicalResponse:
    """Copy with its own parsed payload, so callers cannot edit a stored entry."""
    if response.structured is None:
        return response
    return replace(response, structured=copy.deepcopy(response.structured))


class _Flight:
    """In-progress computation for one fingerprint."""

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.subscribers = 0


class ResultCache:
    """Fingerprint → CanonicalResponse with TTL eviction and coalescing.

    Usage:
        cache = ResultCache(ttl=60)
        response, hit = await cache.get_or_compute(key, lambda: dispatch(...))
    """

    def __init__(
        self,
        ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._flights: dict[str, _Flight] = {}
        self.hits = 0
        self.misses = 0
        self.coalesced = 0

    # -- plain TTL store ----------------------------------------------------

    def get(self, key: str) -> CacheEntry | None:
        """Fresh entry for ``key``, or None. Expired entries are evicted."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            return None
        return entry

    def _put(self, key: str, response: CanonicalResponse) -> CacheEntry:
        if self.get(key) is not None:
            # Entries are never overwritten while fresh
            return self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        entry = CacheEntry(fingerprint=key, response=_detached(response), created_at=self._clock(), ttl=self.ttl)
        self._entries[key] = entry
        return entry

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    # -- coalescing ---------------------------------------------------------

    async def _run(self, key: str, compute: Callable[[], Awaitable[CanonicalResponse]]) -> CanonicalResponse:
        response = await compute()
        self._put(key, response)
        return response

    def _start_flight(self, key: str, compute: Callable[[], Awaitable[CanonicalResponse]]) -> _Flight:
        flight = _Flight(asyncio.create_task(self._run(key, compute)))
        self._flights[key] = flight

        def _release(_task: asyncio.Task) -> None:
            if self._flights.get(key) is flight:
                del self._flights[key]

        # Registered before any subscriber awaits, so the reservation is gone
        # by the time waiters wake up.
        flight.task.add_done_callback(_release)
        return flight

    def _unsubscribe(self, key: str, flight: _Flight) -> None:
        flight.subscribers -= 1
        if flight.subscribers <= 0 and not flight.task.done():
            logger.info("Last subscriber left, cancelling in-flight dispatch for %s", key[:12])
            flight.task.cancel()
            # Drop the reservation now so a newcomer starts a fresh flight
            # instead of joining one that is being torn down.
            if self._flights.get(key) is flight:
                del self._flights[key]

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[CanonicalResponse]],
    ) -> tuple[CanonicalResponse, bool]:
        """Return ``(response, cache_hit)`` for ``key``, dispatching at most once."""
        while True:
            entry = self.get(key)
            if entry is not None:
                self.hits += 1
                return _detached(entry.response), True

            flight = self._flights.get(key)
            owner = flight is None
            if owner:
                self.misses += 1
                flight = self._start_flight(key, compute)
            else:
                self.coalesced += 1
                logger.debug("Coalescing onto in-flight dispatch for %s", key[:12])

            flight.subscribers += 1
            try:
                response = await asyncio.shield(flight.task)
            except asyncio.CancelledError:
                self._unsubscribe(key, flight)
                current = asyncio.current_task()
                if current is not None and current.cancelling() == 0:
                    # The flight was cancelled, not this caller
                    if self._flights.get(key) is flight:
                        del self._flights[key]
                    logger.debug("In-flight dispatch for %s was cancelled, retrying", key[:12])
                    continue
                raise
            except Exception:
                self._unsubscribe(key, flight)
                if owner:
                    raise
                logger.debug("In-flight dispatch for %s failed, retrying independently", key[:12])
                continue

            self._unsubscribe(key, flight)
            return _detached(response), False

    @property
    def in_flight(self) -> int:
        return len(self._flights)

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses + self.coalesced
        return round(self.hits / lookups, 4) if lookups else 0.0

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "in_flight": self.in_flight,
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "hit_rate": self.hit_rate,
            "ttl_seconds": self.ttl,
        }
