"""Sink Gateway: bounded hold queue in front of the news store.

Sources call ``submit(item)`` (never blocks, never raises).  A single
worker task (``run()``) writes the queue head with ``persist()``; while
the store reports ``SinkUnavailableError`` the head is retried with the
shared backoff policy and new items keep accumulating.  When the queue
is full the oldest waiting item is dropped and counted as
``dropped{reason="hold_queue_overflow"}``.

The store's upsert-by-fingerprint is the final dedup authority: an
item the store already holds is counted as ``deduped``, not
``persisted``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from .common_types import NewsItem
from .errors import SinkUnavailableError
from .metrics import MetricsEmitter
from .retry import BackoffPolicy
from .store_sqlite import NewsStore

logger = logging.getLogger(__name__)


class SinkGateway:
    """Single-writer persistence path with a bounded hold queue."""

    def __init__(
        self,
        store: NewsStore,
        metrics: MetricsEmitter,
        *,
        capacity: int = 5000,
        policy: Optional[BackoffPolicy] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.store = store
        self.metrics = metrics
        self.capacity = capacity
        self.policy = policy or BackoffPolicy()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._queue: Deque[NewsItem] = deque()
        self._inflight: Optional[NewsItem] = None
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._failures = 0

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def unavailable(self) -> bool:
        return self._failures > 0

    # ── Producer side ───────────────────────────────────────────

    def submit(self, item: NewsItem) -> None:
        """Enqueue *item* for persistence, evicting the oldest waiting item if full."""
        if len(self._queue) >= self.capacity:
            # The head may be mid-write; evict the oldest item still waiting.
            idx = 1 if self._inflight is not None and self._queue[0] is self._inflight else 0
            if idx < len(self._queue):
                dropped = self._queue[idx]
                del self._queue[idx]
            else:
                dropped = item
            self.metrics.item_dropped("hold_queue_overflow")
            logger.warning(
                "Hold queue full (%d): dropped %s item %s",
                self.capacity, dropped.source_id, dropped.content_fingerprint[:12],
            )
            if dropped is item:
                return
        self._queue.append(item)
        self._idle.clear()
        self._wake.set()

    # ── Write path ──────────────────────────────────────────────

    async def persist(self, item: NewsItem) -> bool:
        """Upsert *item* by fingerprint.  True if newly stored.

        Raises ``SinkUnavailableError`` if the store is unreachable.
        """
        inserted = await self.store.upsert(item.content_fingerprint, item)
        if inserted:
            self.metrics.item_persisted(item.source_id)
        else:
            self.metrics.item_deduped(item.source_id)
        return inserted

    async def run(self) -> None:
        """Worker loop.  Runs until cancelled."""
        while True:
            if not self._queue:
                self._idle.set()
                self._wake.clear()
                await self._wake.wait()
                continue
            head = self._queue[0]
            self._inflight = head
            try:
                await self.persist(head)
            except SinkUnavailableError as exc:
                self._failures += 1
                delay = self.policy.delay(self._failures, self._rng.random())
                self.metrics.failure("sink", exc.reason)
                if self._failures == 1:
                    logger.warning(
                        "Sink unavailable (%s); holding %d item(s)", exc, len(self._queue),
                    )
                logger.debug("Sink retry %d in %.2fs", self._failures, delay)
                await self._sleep(delay)
                continue
            except Exception:
                # Not a reachability problem: retrying the same item cannot help.
                logger.exception("Sink rejected item %s; dropping it", head.content_fingerprint[:12])
                self.metrics.item_dropped("sink_error")
            finally:
                self._inflight = None
            if self._failures:
                logger.info("Sink recovered after %d failed attempt(s)", self._failures)
                self._failures = 0
            if self._queue and self._queue[0] is head:
                self._queue.popleft()

    async def drain(self, timeout: float) -> int:
        """Wait up to *timeout* seconds for the hold queue to empty.

        Returns the number of items still pending.  Requires ``run()`` to
        be active in another task.
        """
        if self._queue:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=max(0.0, timeout))
            except asyncio.TimeoutError:
                pass
        return len(self._queue)

    def discard_pending(self, reason: str = "shutdown") -> int:
        """Drop everything still queued, counting each item as lost."""
        n = len(self._queue)
        if n:
            self.metrics.item_dropped(reason, n)
            logger.warning("Discarding %d unpersisted item(s) (%s)", n, reason)
            self._queue.clear()
        self._idle.set()
        return n
