"""Tests for newsstack.dedup — LRU + TTL admission cache."""

from __future__ import annotations

import threading
import unittest
from datetime import datetime, timezone

from newsstack.common_types import NewsItem, Sentiment
from newsstack.dedup import DedupCache
from newsstack.normalize import fingerprint

NOW = datetime(2025, 1, 20, tzinfo=timezone.utc)


def _item(n: int, source_id: str = "fmp") -> NewsItem:
    title, link = f"headline {n}", f"https://example.com/{n}"
    return NewsItem(
        title=title,
        summary="",
        link=link,
        symbols=frozenset(),
        topics=frozenset(),
        sentiment=Sentiment.UNKNOWN,
        published_at=NOW,
        fetched_at=NOW,
        source_id=source_id,
        content_fingerprint=fingerprint(title, link, source_id),
    )


class FakeClock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class TestAdmit(unittest.TestCase):

    def test_same_item_twice_within_ttl_admitted_once(self):
        cache = DedupCache(capacity=10, ttl_s=60)
        self.assertTrue(cache.admit(_item(1)))
        self.assertFalse(cache.admit(_item(1)))
        self.assertEqual(len(cache), 1)

    def test_same_story_from_another_source_is_distinct(self):
        cache = DedupCache(capacity=10, ttl_s=60)
        self.assertTrue(cache.admit(_item(1, "fmp")))
        self.assertTrue(cache.admit(_item(1, "marketaux")))

    def test_eviction_bound(self):
        cache = DedupCache(capacity=5, ttl_s=60)
        for n in range(6):
            self.assertTrue(cache.admit(_item(n)))
            self.assertLessEqual(len(cache), 5)
        self.assertEqual(cache.evictions, 1)
        # Oldest went first.
        self.assertNotIn(_item(0).content_fingerprint, cache)
        self.assertIn(_item(5).content_fingerprint, cache)

    def test_hit_refreshes_recency(self):
        cache = DedupCache(capacity=3, ttl_s=60)
        for n in range(3):
            cache.admit(_item(n))
        self.assertFalse(cache.admit(_item(0)))  # 0 becomes most recent
        cache.admit(_item(3))  # evicts 1, not 0
        self.assertIn(_item(0).content_fingerprint, cache)
        self.assertNotIn(_item(1).content_fingerprint, cache)

    def test_expired_entry_is_admitted_again(self):
        clock = FakeClock()
        cache = DedupCache(capacity=10, ttl_s=60, clock=clock)
        self.assertTrue(cache.admit(_item(1)))
        clock.t += 59
        self.assertFalse(cache.admit(_item(1)))
        clock.t += 1
        self.assertTrue(cache.admit(_item(1)))
        self.assertEqual(len(cache), 1)

    def test_hit_does_not_extend_ttl(self):
        clock = FakeClock()
        cache = DedupCache(capacity=10, ttl_s=60, clock=clock)
        cache.admit(_item(1))
        for _ in range(5):
            clock.t += 11
            self.assertFalse(cache.admit(_item(1)))
        clock.t += 5  # 60s since first admission
        self.assertTrue(cache.admit(_item(1)))

    def test_concurrent_admit_is_exactly_once(self):
        cache = DedupCache(capacity=100, ttl_s=60)
        results: list[bool] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            ok = cache.admit(_item(42))
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(results.count(True), 1)

    def test_invalid_limits(self):
        with self.assertRaises(ValueError):
            DedupCache(capacity=0)
        with self.assertRaises(ValueError):
            DedupCache(capacity=1, ttl_s=0)
