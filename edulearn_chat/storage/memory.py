from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Tuple


class MemoryQuotaStore:
    """In-process quota store for tests and single-worker development.

    Mirrors the RedisCache counter interface. State lives in this process
    only, so limits are per worker when several workers run.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # key -> (count, window_reset_epoch_seconds)
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def verify_connection(self) -> None:
        return None

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        async with self._lock:
            now = self._clock()
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            if count >= limit:
                self._windows[key] = (count, reset_at)
                return False, count, int(reset_at * 1000)
            count += 1
            self._windows[key] = (count, reset_at)
            return True, count, int(reset_at * 1000)

    async def incr_counter(self, key: str, amount: int, window_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            total, reset_at = self._counters.get(key, (0, 0.0))
            if reset_at <= now:
                total, reset_at = 0, now + window_seconds
            total += max(0, int(amount))
            self._counters[key] = (total, reset_at)
            return total

    async def get_counter(self, key: str) -> int:
        async with self._lock:
            total, reset_at = self._counters.get(key, (0, 0.0))
            if reset_at <= self._clock():
                self._counters.pop(key, None)
                return 0
            return total

    def sweep_expired(self) -> int:
        """Drop expired windows and counters; returns the number removed."""
        now = self._clock()
        removed = 0
        for table in (self._windows, self._counters):
            for key in [k for k, (_, reset_at) in table.items() if reset_at <= now]:
                table.pop(key, None)
                removed += 1
        return removed

    async def close(self) -> None:
        self._windows.clear()
        self._counters.clear()
