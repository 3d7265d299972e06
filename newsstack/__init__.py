"""newsstack – multi-source financial news ingestion.

Polls REST providers (Alpha Vantage, Marketaux, FMP), keeps a WebSocket
news stream connected, and scrapes API-less pages through a WebDriver
endpoint.  Everything is normalised into one ``NewsItem`` shape, passed
through a bounded LRU/TTL dedup cache, and handed to a single sink that
upserts by content fingerprint.

Each source runs as its own asyncio task behind a per-source circuit
breaker, so a slow or broken provider only degrades itself.
"""
