# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
import time
from typing import Callable, Optional

from .ttl_store import TTLStore

lib_logger = logging.getLogger("quota_library")

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_MAX_REQUESTS = 30
DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60


class FixedWindowRateLimiter:
    """
    Fixed-window request counter keyed by client (usually the client IP).

    The first request from a key opens a window; the window's start is the
    entry's insertion time in the backing store. Requests beyond
    `max_requests` inside the window are rejected until the window lapses.

    Counters live in a TTLStore whose TTL is twice the window, so stale keys
    are swept periodically and the table never grows past `max_entries`.
    """

    def __init__(
        self,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        store: Optional[TTLStore[int]] = None,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._store: TTLStore[int] = store if store is not None else TTLStore(
            ttl_seconds=window_seconds * 2, max_entries=max_entries, clock=clock
        )
        self._last_sweep = clock()

    def check(self, key: str) -> bool:
        """Count one request for `key`; returns False when it must be rejected."""
        self._maybe_sweep()

        entry = self._store.get_with_age(key)
        if entry is None or entry[0] > self.window_seconds:
            self._store.set(key, 1)
            return True

        _, count = entry
        count += 1
        self._store.set(key, count, keep_age=True)
        if count > self.max_requests:
            if count == self.max_requests + 1:
                lib_logger.warning(
                    f"Rate limit exceeded for client '{key}' "
                    f"({self.max_requests} requests / {self.window_seconds:.0f}s)"
                )
            return False
        return True

    def remaining(self, key: str) -> int:
        entry = self._store.get_with_age(key)
        if entry is None or entry[0] > self.window_seconds:
            return self.max_requests
        return max(0, self.max_requests - entry[1])

    def retry_after(self, key: str) -> float:
        """Seconds until the current window for `key` closes."""
        entry = self._store.get_with_age(key)
        if entry is None:
            return 0.0
        return max(0.0, self.window_seconds - entry[0])

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval_seconds:
            return
        self._last_sweep = now
        removed = self._store.sweep()
        if removed:
            lib_logger.debug(f"Rate limiter swept {removed} stale client entries")

    def __len__(self) -> int:
        return len(self._store)
