"""In-memory counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limits.
- Thread-safe: uses a lock around shared state.
- Key expiry follows the injected clock so tests can move time deterministically.
"""

from __future__ import annotations

import bisect
import threading
import time
from typing import Callable

from gatekeeper.adapters.counter_store.base import AbstractCounterStore, WindowSnapshot


class InMemoryCounterStore(AbstractCounterStore):
    """Ordered sets and expiring strings held in process memory.

    Important:
        This store is per-process only. It exists for local development and
        tests; production deployments share a Redis instance.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store.

        Args:
            clock: Time source returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._sets: dict[str, list[tuple[int, str]]] = {}
        self._values: dict[str, str] = {}
        self._expires_at_ms: dict[str, int] = {}

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def _evict_if_expired(self, key: str) -> None:
        # A key stays readable at exactly its expiry instant, as in Redis
        expires_at = self._expires_at_ms.get(key)
        if expires_at is not None and expires_at < self._now_ms():
            self._sets.pop(key, None)
            self._values.pop(key, None)
            self._expires_at_ms.pop(key, None)

    def _entries(self, key: str) -> list[tuple[int, str]]:
        self._evict_if_expired(key)
        return self._sets.get(key, [])

    def _store_entries(self, key: str, entries: list[tuple[int, str]]) -> None:
        if entries:
            self._sets[key] = entries
        else:
            self._sets.pop(key, None)
            if key not in self._values:
                self._expires_at_ms.pop(key, None)

    async def add(self, key: str, score: int, member: str) -> None:
        with self._lock:
            entries = list(self._entries(key))
            for index, (_, existing) in enumerate(entries):
                if existing == member:
                    del entries[index]
                    break
            bisect.insort(entries, (score, member))
            self._store_entries(key, entries)

    async def range_by_score(self, key: str, min_score: int, max_score: int) -> list[int]:
        with self._lock:
            return [score for score, _ in self._entries(key) if min_score <= score <= max_score]

    async def remove_range_by_score(self, key: str, min_score: int, max_score: int) -> int:
        with self._lock:
            entries = self._entries(key)
            kept = [entry for entry in entries if not min_score <= entry[0] <= max_score]
            removed = len(entries) - len(kept)
            self._store_entries(key, kept)
            return removed

    async def expire(self, key: str, ttl_ms: int) -> None:
        with self._lock:
            self._evict_if_expired(key)
            if key in self._sets or key in self._values:
                self._expires_at_ms[key] = self._now_ms() + ttl_ms

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        with self._lock:
            self._sets.pop(key, None)
            self._values[key] = value
            self._expires_at_ms[key] = self._now_ms() + ttl_ms

    async def get(self, key: str) -> str | None:
        with self._lock:
            self._evict_if_expired(key)
            return self._values.get(key)

    async def delete(self, key: str) -> bool:
        with self._lock:
            self._evict_if_expired(key)
            existed = key in self._values or bool(self._sets.get(key))
            self._sets.pop(key, None)
            self._values.pop(key, None)
            self._expires_at_ms.pop(key, None)
            return existed

    async def consume_window(
        self,
        key: str,
        *,
        now_ms: int,
        window_ms: int,
        limit: int,
        member: str,
    ) -> WindowSnapshot:
        window_start = now_ms - window_ms
        with self._lock:
            entries = [entry for entry in self._entries(key) if entry[0] >= window_start]
            self._store_entries(key, entries)
            in_window = [score for score, _ in entries if score <= now_ms]
            oldest = in_window[0] if in_window else None

            if len(in_window) >= limit:
                return WindowSnapshot(admitted=False, count=len(in_window), oldest_ms=oldest)

            bisect.insort(entries, (now_ms, member))
            self._sets[key] = entries
            self._expires_at_ms[key] = now_ms + window_ms
            return WindowSnapshot(
                admitted=True,
                count=len(in_window),
                oldest_ms=oldest if oldest is not None else now_ms,
            )
