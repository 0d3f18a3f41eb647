from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from threading import Lock

from searchhub.schemas import MetricsSnapshot, PlatformSearchStatus, PlatformStats


@dataclass
class _PlatformCounters:
    searches: int = 0
    successes: int = 0
    failures: int = 0
    total_time_ms: float = 0.0


@dataclass
class SearchMetrics:
    total_searches: int = 0
    successful_searches: int = 0
    failed_searches: int = 0
    cancelled_searches: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_time_ms: float = 0.0
    platforms: dict[str, _PlatformCounters] = field(default_factory=dict)
    errors: Counter = field(default_factory=Counter)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_search(
        self,
        *,
        duration_ms: float,
        success: bool,
        cached: bool,
        cancelled: bool = False,
        platform_status: dict[str, PlatformSearchStatus] | None = None,
    ) -> None:
        with self._lock:
            self.total_searches += 1
            self.total_time_ms += duration_ms
            if success:
                self.successful_searches += 1
            else:
                self.failed_searches += 1
            if cancelled:
                self.cancelled_searches += 1
            if cached:
                self.cache_hits += 1
                return
            self.cache_misses += 1
            for platform, status in (platform_status or {}).items():
                counters = self.platforms.setdefault(platform, _PlatformCounters())
                counters.searches += 1
                counters.total_time_ms += status.search_time_ms
                if status.success:
                    counters.successes += 1
                else:
                    counters.failures += 1
                    self.errors[platform] += 1
                # accounts that failed inside an otherwise successful platform still count as errors
                if status.success and status.failed_accounts:
                    self.errors[platform] += len(status.failed_accounts)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                total_searches=self.total_searches,
                successful_searches=self.successful_searches,
                failed_searches=self.failed_searches,
                cancelled_searches=self.cancelled_searches,
                cache_hits=self.cache_hits,
                cache_misses=self.cache_misses,
                average_search_time_ms=(self.total_time_ms / self.total_searches) if self.total_searches else 0.0,
                platform_stats={
                    name: PlatformStats(
                        searches=c.searches,
                        successes=c.successes,
                        failures=c.failures,
                        average_time_ms=(c.total_time_ms / c.searches) if c.searches else 0.0,
                    )
                    for name, c in self.platforms.items()
                },
                errors=dict(self.errors),
            )

    def reset(self) -> None:
        with self._lock:
            self.total_searches = 0
            self.successful_searches = 0
            self.failed_searches = 0
            self.cancelled_searches = 0
            self.cache_hits = 0
            self.cache_misses = 0
            self.total_time_ms = 0.0
            self.platforms.clear()
            self.errors.clear()
