# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, List, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLStore(Generic[V]):
    """
    Process-scoped keyed store with per-entry expiry and a hard size cap.

    Entries remember when they were first inserted; an entry older than
    `ttl_seconds` is treated as absent and removed by `sweep()`. When the
    table is full, the oldest insertions are evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def _is_expired(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at > self.ttl_seconds

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return default
        inserted_at, value = entry
        if self._is_expired(inserted_at, self._clock()):
            del self._entries[key]
            return default
        return value

    def get_with_age(self, key: Hashable) -> Optional[Tuple[float, V]]:
        """Return (age_seconds, value) for a live entry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        inserted_at, value = entry
        if self._is_expired(inserted_at, now):
            del self._entries[key]
            return None
        return now - inserted_at, value

    def set(self, key: Hashable, value: V, *, keep_age: bool = False) -> None:
        """
        Store a value. A plain set restarts the entry's age and moves it to the
        back of the eviction order; `keep_age=True` updates the value in place.
        """
        existing = self._entries.get(key)
        if keep_age and existing is not None:
            self._entries[key] = (existing[0], value)
            return

        self._entries.pop(key, None)
        self._entries[key] = (self._clock(), value)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self, max_age: Optional[float] = None) -> int:
        """Drop every entry older than `max_age` (default: the TTL)."""
        limit = self.ttl_seconds if max_age is None else max_age
        now = self._clock()
        stale = [
            key
            for key, (inserted_at, _) in self._entries.items()
            if now - inserted_at > limit
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def items(self) -> List[Tuple[Hashable, Any]]:
        now = self._clock()
        return [
            (key, value)
            for key, (inserted_at, value) in self._entries.items()
            if not self._is_expired(inserted_at, now)
        ]
