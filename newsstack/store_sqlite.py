"""SQLite-backed news store: idempotent upsert by fingerprint + filtered reads.

Uses WAL mode + NORMAL synchronous for maximum write throughput while
retaining crash safety.  Calls are blocking and serialised on a lock;
the async ``upsert`` / ``find`` wrappers run them in a worker thread so
the event loop never waits on disk I/O.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import List, Protocol

from .common_types import NewsFilter, NewsItem, Sentiment
from .errors import SinkUnavailableError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS news (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  fingerprint TEXT NOT NULL UNIQUE,
  title TEXT NOT NULL,
  summary TEXT NOT NULL,
  link TEXT NOT NULL,
  symbols TEXT NOT NULL,
  topics TEXT NOT NULL,
  sentiment TEXT NOT NULL,
  published_at REAL NOT NULL,
  fetched_at REAL NOT NULL,
  source_id TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_news_published ON news(published_at);
"""

_COLUMNS = (
    "id, fingerprint, title, summary, link, symbols, topics, sentiment, "
    "published_at, fetched_at, source_id"
)


class NewsStore(Protocol):
    """Persistence collaborator used by the Sink Gateway."""

    async def upsert(self, fingerprint: str, item: NewsItem) -> bool:
        """Insert *item* if *fingerprint* is new.  True if inserted, False if already present.

        Raises ``SinkUnavailableError`` when the store cannot be reached.
        """
        ...

    async def find(self, flt: NewsFilter) -> List[NewsItem]:
        ...


def _row_to_item(row: sqlite3.Row) -> NewsItem:
    return NewsItem(
        id=row["id"],
        title=row["title"],
        summary=row["summary"],
        link=row["link"],
        symbols=frozenset(json.loads(row["symbols"])),
        topics=frozenset(json.loads(row["topics"])),
        sentiment=Sentiment(row["sentiment"]),
        published_at=datetime.fromtimestamp(row["published_at"], tz=timezone.utc),
        fetched_at=datetime.fromtimestamp(row["fetched_at"], tz=timezone.utc),
        source_id=row["source_id"],
        content_fingerprint=row["fingerprint"],
    )


class SqliteNewsStore:
    """``NewsStore`` backed by a single SQLite connection."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self.conn.executescript(SCHEMA)

    # ── Write path ──────────────────────────────────────────────

    def upsert_sync(self, fingerprint: str, item: NewsItem) -> bool:
        try:
            with self._lock:
                cur = self.conn.execute(
                    "INSERT OR IGNORE INTO news(fingerprint, title, summary, link, symbols, topics, "
                    "sentiment, published_at, fetched_at, source_id) VALUES(?,?,?,?,?,?,?,?,?,?)",
                    (
                        fingerprint,
                        item.title,
                        item.summary,
                        item.link,
                        json.dumps(sorted(item.symbols)),
                        json.dumps(sorted(item.topics)),
                        item.sentiment.value,
                        item.published_at.timestamp(),
                        item.fetched_at.timestamp(),
                        item.source_id,
                    ),
                )
                return cur.rowcount == 1
        except sqlite3.OperationalError as exc:
            # Locked / disk I/O / unable to open: worth retrying later.
            raise SinkUnavailableError(f"sqlite: {exc}", source_id=item.source_id) from exc

    async def upsert(self, fingerprint: str, item: NewsItem) -> bool:
        return await asyncio.to_thread(self.upsert_sync, fingerprint, item)

    # ── Read path ───────────────────────────────────────────────

    def find_sync(self, flt: NewsFilter) -> List[NewsItem]:
        clauses: list[str] = []
        params: list[object] = []
        if flt.symbol:
            # symbols is a sorted JSON array of upper-case tickers.
            clauses.append("symbols LIKE ?")
            params.append(f'%"{flt.symbol.strip().upper()}"%')
        if flt.date_from is not None:
            clauses.append("published_at >= ?")
            params.append(flt.date_from.timestamp())
        if flt.date_to is not None:
            clauses.append("published_at <= ?")
            params.append(flt.date_to.timestamp())
        if flt.sentiment is not None:
            clauses.append("sentiment = ?")
            params.append(Sentiment(flt.sentiment).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM news {where} ORDER BY published_at DESC, id DESC"
        try:
            with self._lock:
                rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as exc:
            raise SinkUnavailableError(f"sqlite: {exc}") from exc
        return [_row_to_item(r) for r in rows]

    async def find(self, flt: NewsFilter) -> List[NewsItem]:
        return await asyncio.to_thread(self.find_sync, flt)

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) FROM news").fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            self.conn.close()
        logger.debug("SQLite store %s closed", self.path)


def open_store(path: str, *, create_dirs: bool = True) -> SqliteNewsStore:
    """Open (and create the parent directory of) the store at *path*."""
    if create_dirs and path != ":memory:":
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    return SqliteNewsStore(path)
