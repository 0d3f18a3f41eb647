from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from searchhub.schemas import CacheEntryInfo, CacheStats

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float
    request: Any = None

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    @property
    def result_count(self) -> int:
        try:
            return len(self.value)
        except TypeError:
            return 0


class ResultCache:
    """TTL cache keyed by request fingerprint, with single-flight fetches.

    Capacity eviction drops the oldest entry by creation time, not by last access.
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.max_size = max(1, int(max_size))
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
            return entry

    def set(self, key: str, value: Any, ttl: float | None = None, *, request: Any = None) -> CacheEntry:
        ttl = self.default_ttl if ttl is None else float(ttl)
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        entry = CacheEntry(key=key, value=value, created_at=self._clock(), ttl=ttl, request=request)
        with self._lock:
            if key not in self._entries:
                while len(self._entries) >= self.max_size:
                    oldest = min(self._entries.values(), key=lambda e: e.created_at)
                    del self._entries[oldest.key]
                    logger.debug("Evicted cache entry %s", oldest.key)
            self._entries[key] = entry
        return entry

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        return dropped

    def invalidate(self, predicate: Callable[[Any], bool]) -> int:
        """Drop entries whose originating request satisfies ``predicate``."""
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if predicate(entry.request)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def reset_metrics(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            for key in [k for k, e in self._entries.items() if e.expired(now)]:
                del self._entries[key]
            lookups = self._hits + self._misses
            return CacheStats(
                size=len(self._entries),
                max_size=self.max_size,
                hit_rate=(self._hits / lookups) if lookups else 0.0,
                hits=self._hits,
                misses=self._misses,
                entries=[
                    CacheEntryInfo(key=e.key, timestamp=e.created_at, ttl=e.ttl, result_count=e.result_count)
                    for e in self._entries.values()
                ],
            )

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        *,
        ttl: float | None = None,
        request: Any = None,
        should_store: Callable[[Any], bool] | None = None,
    ) -> tuple[Any, bool]:
        """Return ``(value, from_cache)``; concurrent callers for one key share a single fetch."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                self._hits += 1
                return entry.value, True
            pending = self._inflight.get(key)
            leader = pending is None
            if leader:
                self._misses += 1
                pending = asyncio.get_running_loop().create_future()
                # Consume the outcome so an unawaited failure is not reported as never retrieved.
                pending.add_done_callback(lambda f: f.cancelled() or f.exception())
                self._inflight[key] = pending
            else:
                self._hits += 1

        if not leader:
            return await asyncio.shield(pending), True

        try:
            value = await fetch()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            if isinstance(exc, asyncio.CancelledError):
                pending.cancel()
            else:
                pending.set_exception(exc)
            raise

        if should_store is None or should_store(value):
            self.set(key, value, ttl, request=request)
        with self._lock:
            self._inflight.pop(key, None)
        pending.set_result(value)
        return value, False
