"""Tests for newsstack.sink — hold queue, outage recovery and overflow accounting."""

from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timezone

from newsstack.common_types import NewsItem, Sentiment
from newsstack.errors import SinkError, SinkUnavailableError
from newsstack.metrics import MetricsEmitter
from newsstack.normalize import fingerprint
from newsstack.retry import BackoffPolicy
from newsstack.sink import SinkGateway

T0 = datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc)


def _item(n: int, source_id: str = "fmp") -> NewsItem:
    title, link = f"headline {n}", f"https://example.com/{n}"
    return NewsItem(
        title=title,
        summary="",
        link=link,
        symbols=frozenset({"AAPL"}),
        topics=frozenset(),
        sentiment=Sentiment.UNKNOWN,
        published_at=T0,
        fetched_at=T0,
        source_id=source_id,
        content_fingerprint=fingerprint(title, link, source_id),
    )


class FakeStore:
    """In-memory store that can be made unavailable for the first N writes."""

    def __init__(self, fail_times: int = 0, error: Exception | None = None) -> None:
        self.fail_times = fail_times
        self.error = error
        self.rows: dict[str, NewsItem] = {}
        self.writes: list[str] = []
        self.attempts = 0

    async def upsert(self, fp: str, item: NewsItem) -> bool:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise SinkUnavailableError("database is locked")
        if self.error is not None and item.title == "headline 1":
            raise self.error
        if fp in self.rows:
            return False
        self.rows[fp] = item
        self.writes.append(fp)
        return True

    async def find(self, flt):
        return list(self.rows.values())


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def _sink(store: FakeStore, capacity: int = 100, sleep=None) -> tuple[SinkGateway, MetricsEmitter]:
    metrics = MetricsEmitter()
    sink = SinkGateway(
        store,
        metrics,
        capacity=capacity,
        policy=BackoffPolicy(initial_s=1.0, multiplier=2.0, max_s=60.0, jitter=0.0),
        sleep=sleep or RecordingSleep(),
    )
    return sink, metrics


async def _run_until_drained(sink: SinkGateway, timeout: float = 2.0) -> int:
    worker = asyncio.create_task(sink.run())
    try:
        return await sink.drain(timeout)
    finally:
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)


class TestOutageRecovery(unittest.TestCase):

    def test_items_survive_outage_and_persist_once(self):
        store = FakeStore(fail_times=5)
        sleep = RecordingSleep()

        async def go():
            sink, metrics = _sink(store, sleep=sleep)
            for n in range(4):
                sink.submit(_item(n))
            self.assertEqual(sink.pending, 4)
            with self.assertLogs("newsstack.sink", level="INFO") as cm:
                left = await _run_until_drained(sink)
            return sink, metrics, left, cm.output

        sink, metrics, left, logs = asyncio.run(go())
        self.assertEqual(left, 0)
        self.assertEqual(len(store.writes), 4)
        self.assertEqual(len(set(store.writes)), 4)
        self.assertEqual(sleep.delays, [1.0, 2.0, 4.0, 8.0, 16.0])
        self.assertEqual(metrics.value("newsstack_failures_total", source="sink", reason="unavailable"), 5)
        self.assertEqual(metrics.value("newsstack_items_persisted_total", source="fmp"), 4)
        self.assertEqual(sum("Sink unavailable" in line for line in logs), 1)
        self.assertTrue(any("recovered after 5" in line for line in logs))
        self.assertFalse(sink.unavailable)

    def test_store_noop_counts_as_deduped(self):
        store = FakeStore()
        store.rows[_item(1).content_fingerprint] = _item(1)

        async def go():
            sink, metrics = _sink(store)
            sink.submit(_item(1))
            sink.submit(_item(2))
            await _run_until_drained(sink)
            return metrics

        metrics = asyncio.run(go())
        self.assertEqual(metrics.value("newsstack_items_deduped_total", source="fmp"), 1)
        self.assertEqual(metrics.value("newsstack_items_persisted_total", source="fmp"), 1)

    def test_non_availability_error_drops_the_item(self):
        store = FakeStore(error=SinkError("constraint failed"))

        async def go():
            sink, metrics = _sink(store)
            for n in range(3):
                sink.submit(_item(n))
            with self.assertLogs("newsstack.sink", level="ERROR"):
                left = await _run_until_drained(sink)
            return metrics, left

        metrics, left = asyncio.run(go())
        self.assertEqual(left, 0)
        self.assertEqual(len(store.writes), 2)
        self.assertEqual(metrics.value("newsstack_items_dropped_total", reason="sink_error"), 1)


class TestOverflow(unittest.TestCase):

    def test_oldest_waiting_item_is_dropped(self):
        sink, metrics = _sink(FakeStore(), capacity=3)
        with self.assertLogs("newsstack.sink", level="WARNING"):
            for n in range(5):
                sink.submit(_item(n))
        self.assertEqual(sink.pending, 3)
        self.assertEqual([it.title for it in sink._queue], ["headline 2", "headline 3", "headline 4"])
        self.assertEqual(metrics.value("newsstack_items_dropped_total", reason="hold_queue_overflow"), 2)

    def test_in_flight_head_is_never_evicted(self):
        sink, metrics = _sink(FakeStore(), capacity=2)
        sink.submit(_item(0))
        sink.submit(_item(1))
        sink._inflight = sink._queue[0]
        sink.submit(_item(2))
        self.assertEqual([it.title for it in sink._queue], ["headline 0", "headline 2"])

    def test_capacity_one_with_in_flight_head_drops_newcomer(self):
        sink, metrics = _sink(FakeStore(), capacity=1)
        sink.submit(_item(0))
        sink._inflight = sink._queue[0]
        sink.submit(_item(1))
        self.assertEqual([it.title for it in sink._queue], ["headline 0"])
        self.assertEqual(metrics.value("newsstack_items_dropped_total", reason="hold_queue_overflow"), 1)

    def test_outage_with_overflow_accounts_for_every_item(self):
        store = FakeStore(fail_times=3)
        sleep = RecordingSleep()

        async def go():
            sink, metrics = _sink(store, capacity=4, sleep=sleep)
            worker = asyncio.create_task(sink.run())
            sink.submit(_item(0))
            # Let the worker pick up the head and hit the outage.
            while not sleep.delays:
                await asyncio.sleep(0)
            for n in range(1, 8):
                sink.submit(_item(n))
            left = await sink.drain(2.0)
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
            return metrics, left

        metrics, left = asyncio.run(go())
        self.assertEqual(left, 0)
        dropped = metrics.value("newsstack_items_dropped_total", reason="hold_queue_overflow")
        persisted = metrics.value("newsstack_items_persisted_total", source="fmp")
        self.assertEqual(dropped, 4)
        self.assertEqual(persisted + dropped, 8)
        self.assertIn(_item(0).content_fingerprint, store.writes)


class TestShutdown(unittest.TestCase):

    def test_discard_pending_counts_residue(self):
        sink, metrics = _sink(FakeStore())
        for n in range(3):
            sink.submit(_item(n))
        with self.assertLogs("newsstack.sink", level="WARNING"):
            self.assertEqual(sink.discard_pending(), 3)
        self.assertEqual(sink.pending, 0)
        self.assertEqual(metrics.value("newsstack_items_dropped_total", reason="shutdown"), 3)

    def test_drain_times_out_while_store_is_down(self):
        store = FakeStore(fail_times=10_000)

        async def slow_sleep(delay: float) -> None:
            await asyncio.sleep(0.01)

        async def go():
            sink, _ = _sink(store, sleep=slow_sleep)
            sink.submit(_item(0))
            sink.submit(_item(1))
            return await _run_until_drained(sink, timeout=0.1)

        self.assertEqual(asyncio.run(go()), 2)

    def test_rejects_non_positive_capacity(self):
        with self.assertRaises(ValueError):
            SinkGateway(FakeStore(), MetricsEmitter(), capacity=0)
