"""Normalisation functions: raw provider payloads → NewsItem.

Each provider has its own normaliser.  The functions are intentionally
**schema-tolerant**: they try multiple field names so that minor API
changes don't silently drop data.  The *primary* field names match the
real API responses.

Alpha Vantage (NEWS_SENTIMENT feed):
    title, url, summary, time_published (YYYYMMDDTHHMMSS), topics[{topic}],
    overall_sentiment_label, ticker_sentiment[{ticker}]

Marketaux (/v1/news/all):
    uuid, title, description, snippet, url, published_at,
    entities[{symbol, sentiment_score}]

FMP (/stable/news/stock-latest):
    symbol, publishedDate, publisher, title, site, text, url

Benzinga WS (news stream):
    id, title, teaser, url, stocks[{name}], channels[{name}], created

Scrape (WebDriver extraction):
    title, url, summary?

A payload without a title or link is refused with ``IncompleteError``.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from dateutil import parser as dtparser

from .common_types import NewsItem, RawPayload, Sentiment
from .errors import IncompleteError, NormalizeError

logger = logging.getLogger(__name__)


# ── Shared helpers ──────────────────────────────────────────────

# Minimum length for a date string to be considered valid.
# Shortest valid format: "YYYYMMDD" = 8 chars.  Shorter strings like
# "5" or "12" are ambiguously parsed by dateutil (e.g. "5" → Feb 5).
_MIN_DATE_LEN = 8

# Alpha Vantage compact timestamp, e.g. "20240105T143000".
_AV_TS_RE = re.compile(r"^\d{8}T\d{4}(\d{2})?$")

_SUMMARY_MAX = 2000

# Scores within ±band are neutral.
_NEUTRAL_BAND = 0.15


def _norm(s: str) -> str:
    s = (s or "").strip().lower()
    s = re.sub(r"[^\w\s]", "", s)
    return re.sub(r"\s+", " ", s)


def canonical_link(url: str) -> str:
    """Lower-case scheme/host, drop the fragment and any trailing slash."""
    url = (url or "").strip()
    if not url:
        return ""
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def fingerprint(title: str, link: str, source_id: str) -> str:
    """Deterministic dedup key over normalised (title, link, source_id)."""
    key = f"{_norm(title)}|{canonical_link(link)}|{source_id.strip().lower()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _to_datetime(value: Any) -> Optional[datetime]:
    """Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO-ish strings, Alpha Vantage's compact form, and epoch
    seconds.  Returns ``None`` for empty or unparseable values so the
    caller can fall back to the ingestion time.  Naive datetimes are
    assumed UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not value > 0:  # also rejects NaN
            return None
        # Millisecond epochs are common on streaming feeds.
        secs = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(secs, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Epoch timestamp out of range: %r — ignoring.", value)
            return None
    s = str(value).strip()
    if len(s) < _MIN_DATE_LEN:
        logger.warning("Date string too short (%d chars): %r — ignoring.", len(s), s)
        return None
    try:
        if _AV_TS_RE.match(s):
            fmt = "%Y%m%dT%H%M%S" if len(s) == 15 else "%Y%m%dT%H%M"
            dt = datetime.strptime(s, fmt)
        else:
            dt = dtparser.parse(s)
    except (ValueError, OverflowError, TypeError):
        logger.warning("Unparseable date %r — ignoring.", s[:80])
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _first(it: Dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = it.get(k)
        if v is not None and str(v).strip():
            return str(v).strip()
    return ""


def _names(seq: Any, *keys: str) -> list[str]:
    """Pull string names out of ``list[dict]``, ``list[str]`` or csv."""
    if isinstance(seq, str):
        return [s.strip() for s in seq.split(",") if s.strip()]
    out: list[str] = []
    if isinstance(seq, list):
        for s in seq:
            if isinstance(s, dict):
                name = next((s[k] for k in keys if s.get(k)), "")
                if name:
                    out.append(str(name).strip())
            elif isinstance(s, str) and s.strip():
                out.append(s.strip())
    return out


def _symbols(values: Iterable[Any]) -> frozenset[str]:
    return frozenset(str(v).upper() for v in values if v)


def _topics(values: Iterable[Any]) -> frozenset[str]:
    return frozenset(str(v).lower() for v in values if v)


def sentiment_from_label(label: Any) -> Sentiment:
    """Map a provider sentiment label onto the canonical set."""
    s = str(label or "").strip().lower().replace("_", "-")
    if s in ("bullish", "somewhat-bullish", "positive"):
        return Sentiment.POSITIVE
    if s in ("bearish", "somewhat-bearish", "negative"):
        return Sentiment.NEGATIVE
    if s == "neutral":
        return Sentiment.NEUTRAL
    return Sentiment.UNKNOWN


def sentiment_from_score(score: Any) -> Sentiment:
    """Map a numeric sentiment score (roughly -1..1) by sign."""
    try:
        x = float(score)
    except (TypeError, ValueError):
        return Sentiment.UNKNOWN
    if x != x:  # NaN
        return Sentiment.UNKNOWN
    if x > _NEUTRAL_BAND:
        return Sentiment.POSITIVE
    if x < -_NEUTRAL_BAND:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


def _build(
    *,
    source_id: str,
    title: str,
    link: str,
    summary: str,
    symbols: frozenset[str],
    topics: frozenset[str],
    sentiment: Sentiment,
    published: Optional[datetime],
    fetched_at: datetime,
) -> NewsItem:
    missing = tuple(name for name, v in (("title", title), ("link", link)) if not v)
    if missing:
        raise IncompleteError(
            f"payload missing {', '.join(missing)}", source_id=source_id, missing=missing,
        )
    return NewsItem(
        title=title,
        summary=summary[:_SUMMARY_MAX],
        link=link,
        symbols=symbols,
        topics=topics,
        sentiment=sentiment,
        published_at=published or fetched_at,
        fetched_at=fetched_at,
        source_id=source_id,
        content_fingerprint=fingerprint(title, link, source_id),
    )


# ── Alpha Vantage ───────────────────────────────────────────────

def normalize_alphavantage(it: RawPayload, *, source_id: str, fetched_at: datetime) -> NewsItem:
    """Normalise one Alpha Vantage NEWS_SENTIMENT feed entry."""
    symbols = _names(it.get("ticker_sentiment") or it.get("tickers") or [], "ticker")
    return _build(
        source_id=source_id,
        title=_first(it, "title", "headline"),
        link=_first(it, "url", "link"),
        summary=_first(it, "summary", "description"),
        symbols=_symbols(symbols),
        topics=_topics(_names(it.get("topics") or [], "topic")),
        sentiment=sentiment_from_label(it.get("overall_sentiment_label")),
        published=_to_datetime(_first(it, "time_published", "published")),
        fetched_at=fetched_at,
    )


# ── Marketaux ───────────────────────────────────────────────────

def normalize_marketaux(it: RawPayload, *, source_id: str, fetched_at: datetime) -> NewsItem:
    """Normalise one Marketaux article.

    Marketaux has no article-level label; the mean entity sentiment
    score is mapped by sign.
    """
    raw_entities = it.get("entities")
    entities = [e for e in raw_entities if isinstance(e, dict)] if isinstance(raw_entities, list) else []
    scores = [e["sentiment_score"] for e in entities if isinstance(e.get("sentiment_score"), (int, float))]
    sentiment = sentiment_from_score(sum(scores) / len(scores)) if scores else Sentiment.UNKNOWN
    topics = [e.get("industry") for e in entities if e.get("industry")]
    return _build(
        source_id=source_id,
        title=_first(it, "title"),
        link=_first(it, "url", "link"),
        summary=_first(it, "description", "snippet"),
        symbols=_symbols(_names(entities, "symbol")),
        topics=_topics(topics),
        sentiment=sentiment,
        published=_to_datetime(_first(it, "published_at", "published")),
        fetched_at=fetched_at,
    )


# ── FMP ─────────────────────────────────────────────────────────

def normalize_fmp(it: RawPayload, *, source_id: str, fetched_at: datetime) -> NewsItem:
    """Normalise one raw FMP stock-news item."""
    sym = it.get("symbol")
    symbols = [sym] if isinstance(sym, str) and sym.strip() else _names(it.get("tickers") or [], "symbol")
    if it.get("sentiment") is not None:
        sentiment = sentiment_from_label(it.get("sentiment"))
        if sentiment is Sentiment.UNKNOWN:
            sentiment = sentiment_from_score(it.get("sentimentScore"))
    else:
        sentiment = sentiment_from_score(it.get("sentimentScore"))
    return _build(
        source_id=source_id,
        title=_first(it, "title", "headline"),
        link=_first(it, "url", "link"),
        summary=_first(it, "text", "snippet", "content"),
        symbols=_symbols(s.strip() for s in symbols),
        topics=frozenset(),
        sentiment=sentiment,
        published=_to_datetime(_first(it, "publishedDate", "published", "date")),
        fetched_at=fetched_at,
    )


# ── Benzinga WebSocket ──────────────────────────────────────────

def normalize_benzinga_ws(msg: RawPayload, *, source_id: str, fetched_at: datetime) -> NewsItem:
    """Normalise one Benzinga WebSocket article (already unwrapped)."""
    content = msg.get("content") if isinstance(msg.get("content"), dict) else msg
    return _build(
        source_id=source_id,
        title=_first(content, "title", "headline"),
        link=_first(content, "url", "link"),
        summary=_first(content, "teaser", "summary", "body"),
        symbols=_symbols(_names(content.get("stocks") or content.get("tickers") or [], "name", "symbol")),
        topics=_topics(_names(content.get("channels") or [], "name")),
        sentiment=sentiment_from_label(content.get("sentiment")),
        published=_to_datetime(content.get("created") or content.get("published")),
        fetched_at=fetched_at,
    )


# ── Scrape ──────────────────────────────────────────────────────

def normalize_scrape(it: RawPayload, *, source_id: str, fetched_at: datetime) -> NewsItem:
    """Normalise one headline extracted by the WebDriver scraper."""
    return _build(
        source_id=source_id,
        title=" ".join(_first(it, "title").split()),
        link=_first(it, "url", "link"),
        summary=_first(it, "summary"),
        symbols=_symbols(_names(it.get("symbols") or [])),
        topics=frozenset(),
        sentiment=Sentiment.UNKNOWN,
        published=_to_datetime(it.get("published")),
        fetched_at=fetched_at,
    )


Normalizer = Callable[..., NewsItem]

NORMALIZERS: Dict[str, Normalizer] = {
    "alphavantage": normalize_alphavantage,
    "marketaux": normalize_marketaux,
    "fmp": normalize_fmp,
    "benzinga_ws": normalize_benzinga_ws,
    "scrape": normalize_scrape,
}


def normalize(
    provider: str,
    raw: RawPayload,
    *,
    source_id: str,
    fetched_at: Optional[datetime] = None,
) -> NewsItem:
    """Dispatch *raw* to the normaliser registered for *provider*."""
    try:
        fn = NORMALIZERS[provider]
    except KeyError:
        raise ValueError(f"no normaliser registered for provider {provider!r}") from None
    if not isinstance(raw, dict):
        raise IncompleteError(
            f"payload is {type(raw).__name__}, not an object",
            source_id=source_id, missing=("title", "link"),
        )
    try:
        return fn(raw, source_id=source_id, fetched_at=fetched_at or datetime.now(timezone.utc))
    except (TypeError, ValueError, AttributeError, KeyError, OverflowError) as exc:
        raise NormalizeError(
            f"malformed payload: {type(exc).__name__}: {exc}",
            source_id=source_id, reason="parse",
        ) from exc
