"""Tests for newsstack.store_sqlite — idempotent upsert and the filtered read path."""

from __future__ import annotations

import asyncio
import os
import sqlite3
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from newsstack.common_types import NewsFilter, NewsItem, Sentiment
from newsstack.errors import SinkUnavailableError
from newsstack.normalize import fingerprint
from newsstack.store_sqlite import SqliteNewsStore, open_store

T0 = datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc)


def _item(n: int, *, symbols=("AAPL",), sentiment=Sentiment.NEUTRAL, hours: int = 0) -> NewsItem:
    title, link = f"headline {n}", f"https://example.com/{n}"
    return NewsItem(
        title=title,
        summary=f"summary {n}",
        link=link,
        symbols=frozenset(symbols),
        topics=frozenset({"earnings"}),
        sentiment=sentiment,
        published_at=T0 + timedelta(hours=hours),
        fetched_at=T0 + timedelta(hours=hours, minutes=1),
        source_id="fmp",
        content_fingerprint=fingerprint(title, link, "fmp"),
    )


class TestUpsert(unittest.TestCase):

    def setUp(self):
        self.store = SqliteNewsStore(":memory:")

    def tearDown(self):
        self.store.close()

    def test_insert_then_noop(self):
        it = _item(1)
        self.assertTrue(asyncio.run(self.store.upsert(it.content_fingerprint, it)))
        self.assertFalse(asyncio.run(self.store.upsert(it.content_fingerprint, it)))
        self.assertEqual(self.store.count(), 1)

    def test_existing_record_is_never_mutated(self):
        it = _item(1)
        self.store.upsert_sync(it.content_fingerprint, it)
        changed = replace(it, title="rewritten")
        self.assertFalse(self.store.upsert_sync(it.content_fingerprint, changed))
        (stored,) = self.store.find_sync(NewsFilter())
        self.assertEqual(stored.title, "headline 1")

    def test_round_trip_fields(self):
        it = _item(7, symbols=("MSFT", "AAPL"), sentiment=Sentiment.POSITIVE)
        self.store.upsert_sync(it.content_fingerprint, it)
        (got,) = self.store.find_sync(NewsFilter())
        self.assertIsNotNone(got.id)
        self.assertEqual(got.symbols, frozenset({"AAPL", "MSFT"}))
        self.assertEqual(got.topics, frozenset({"earnings"}))
        self.assertIs(got.sentiment, Sentiment.POSITIVE)
        self.assertEqual(got.published_at, it.published_at)
        self.assertEqual(got.content_fingerprint, it.content_fingerprint)

    def test_operational_error_is_unavailable(self):
        it = _item(1)
        self.store.conn = MagicMock()
        self.store.conn.execute.side_effect = sqlite3.OperationalError("database is locked")
        with self.assertRaises(SinkUnavailableError):
            self.store.upsert_sync(it.content_fingerprint, it)


class TestFind(unittest.TestCase):

    def setUp(self):
        self.store = SqliteNewsStore(":memory:")
        rows = [
            _item(1, symbols=("AAPL",), sentiment=Sentiment.POSITIVE, hours=0),
            _item(2, symbols=("MSFT",), sentiment=Sentiment.NEGATIVE, hours=1),
            _item(3, symbols=("AAPL", "NVDA"), sentiment=Sentiment.NEGATIVE, hours=2),
            _item(4, symbols=("AAP",), sentiment=Sentiment.NEUTRAL, hours=3),
        ]
        for r in rows:
            self.store.upsert_sync(r.content_fingerprint, r)

    def tearDown(self):
        self.store.close()

    def _titles(self, flt: NewsFilter) -> list[str]:
        return [it.title for it in asyncio.run(self.store.find(flt))]

    def test_newest_first(self):
        self.assertEqual(self._titles(NewsFilter()), ["headline 4", "headline 3", "headline 2", "headline 1"])

    def test_symbol_is_exact_match(self):
        self.assertEqual(self._titles(NewsFilter(symbol="aapl")), ["headline 3", "headline 1"])

    def test_date_window(self):
        flt = NewsFilter(date_from=T0 + timedelta(hours=1), date_to=T0 + timedelta(hours=2))
        self.assertEqual(self._titles(flt), ["headline 3", "headline 2"])

    def test_sentiment(self):
        self.assertEqual(self._titles(NewsFilter(sentiment=Sentiment.NEGATIVE)), ["headline 3", "headline 2"])

    def test_combined(self):
        flt = NewsFilter(symbol="AAPL", sentiment=Sentiment.NEGATIVE)
        self.assertEqual(self._titles(flt), ["headline 3"])


class TestOpenStore(unittest.TestCase):

    def test_creates_parent_directory_and_uses_wal(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "news.db")
            store = open_store(path)
            try:
                mode = store.conn.execute("PRAGMA journal_mode;").fetchone()[0]
                self.assertEqual(mode.lower(), "wal")
                self.assertTrue(os.path.exists(path))
            finally:
                store.close()
