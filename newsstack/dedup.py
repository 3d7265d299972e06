"""In-memory LRU + TTL admission cache keyed by content fingerprint.

``admit(item)`` is the only mutating entry point: it answers "first time
within the TTL?" and records the answer atomically, so two sources
racing on the same article admit it exactly once.

A hit moves the entry to the MRU end but does **not** refresh its
timestamp; an article that keeps reappearing is admitted again once a
full TTL has passed since its first admission.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable

from .common_types import NewsItem


class DedupCache:
    """Bounded fingerprint → admitted-at map."""

    def __init__(
        self,
        capacity: int = 10_000,
        ttl_s: float = 172_800.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.capacity = capacity
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            ts = self._entries.get(fingerprint)  # type: ignore[arg-type]
            return ts is not None and self._clock() - ts < self.ttl_s

    def admit(self, item: NewsItem) -> bool:
        """Return True if *item* is new (or its entry expired); False if a duplicate."""
        fp = item.content_fingerprint
        with self._lock:
            now = self._clock()
            ts = self._entries.get(fp)
            if ts is not None and now - ts < self.ttl_s:
                self._entries.move_to_end(fp)
                return False
            self._entries[fp] = now
            self._entries.move_to_end(fp)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self.evictions += 1
            return True

