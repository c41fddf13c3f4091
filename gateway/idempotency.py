"""
Idempotency cache for side-effecting gateway routes.

One key maps to exactly one final response. The first caller runs the
producer; concurrent callers with the same key wait on a per-key lock and
then receive the cached response, so the side effect runs once. Failure
responses are cached just like successes; a producer that raises caches
nothing. Entries expire after ttl_sec and the store keeps at most
max_entries, evicting the oldest.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL_SEC = 24 * 3600.0
DEFAULT_MAX_ENTRIES = 10_000


@dataclass(frozen=True)
class CachedResponse:
    status: int
    body: dict
    created_at: float


class IdempotencyStore(Protocol):
    def get(self, key: str) -> CachedResponse | None: ...

    def put(self, key: str, entry: CachedResponse) -> None: ...


class InMemoryIdempotencyStore:
    """Insertion-ordered, TTL-expiring, size-capped."""

    def __init__(
        self,
        ttl_sec: float = DEFAULT_TTL_SEC,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_sec = ttl_sec
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()

    def get(self, key: str) -> CachedResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.created_at > self._ttl_sec:
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, entry: CachedResponse) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Idempotency cache full, evicted %s", evicted)

    def __len__(self) -> int:
        return len(self._entries)


Producer = Callable[[], Awaitable[tuple[int, dict]]]


class IdempotencyCache:
    def __init__(
        self,
        store: IdempotencyStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store if store is not None else InMemoryIdempotencyStore(clock=clock)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def lookup(self, key: str) -> CachedResponse | None:
        return self._store.get(key)

    async def run(self, key: str, producer: Producer) -> tuple[int, dict, bool]:
        """
        Return (status, body, replayed). replayed is True when the response
        came from the cache instead of this call's producer.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                cached = self._store.get(key)
                if cached is not None:
                    logger.info("Idempotent replay for key %s", key)
                    return cached.status, cached.body, True
                status, body = await producer()
                self._store.put(key, CachedResponse(status, body, self._clock()))
                return status, body, False
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)
