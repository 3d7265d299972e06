"""Global configuration for the newsstack ingestion core.

Supports Alpha Vantage / Marketaux / FMP (polling), a Benzinga-style
WebSocket stream, and WebDriver scraping.  All tunables can be
overridden via environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .common_types import SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_bool(key: str, default: bool) -> bool:
    return os.getenv(key, "1" if default else "0") == "1"


def _env_csv(key: str) -> tuple[str, ...]:
    raw = os.getenv(key, "")
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per process.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── Credentials (repr=False to prevent accidental logging) ──
    alphavantage_api_key: str = field(default_factory=lambda: os.getenv("ALPHAVANTAGE_API_KEY", ""), repr=False)
    marketaux_api_key: str = field(default_factory=lambda: os.getenv("MARKETAUX_API_KEY", ""), repr=False)
    fmp_api_key: str = field(default_factory=lambda: os.getenv("FMP_API_KEY", ""), repr=False)
    benzinga_api_key: str = field(default_factory=lambda: os.getenv("BENZINGA_API_KEY", ""), repr=False)

    # ── Feature flags ───────────────────────────────────────────
    enable_alphavantage: bool = field(default_factory=lambda: _env_bool("ENABLE_ALPHAVANTAGE", True))
    enable_marketaux: bool = field(default_factory=lambda: _env_bool("ENABLE_MARKETAUX", True))
    enable_fmp: bool = field(default_factory=lambda: _env_bool("ENABLE_FMP", True))
    enable_benzinga_ws: bool = field(default_factory=lambda: _env_bool("ENABLE_BENZINGA_WS", False))
    enable_scrape: bool = field(default_factory=lambda: _env_bool("ENABLE_SCRAPE", False))

    # ── Watch list (applied to every source that supports it) ──
    symbols: tuple[str, ...] = field(default_factory=lambda: _env_csv("WATCH_SYMBOLS"))
    topics: tuple[str, ...] = field(default_factory=lambda: _env_csv("WATCH_TOPICS"))

    # ── Polling cadence (seconds) ───────────────────────────────
    alphavantage_poll_s: float = field(default_factory=lambda: _env_float("ALPHAVANTAGE_POLL_S", 300.0))
    marketaux_poll_s: float = field(default_factory=lambda: _env_float("MARKETAUX_POLL_S", 120.0))
    fmp_poll_s: float = field(default_factory=lambda: _env_float("FMP_POLL_S", 60.0))
    request_timeout_s: float = field(default_factory=lambda: _env_float("REQUEST_TIMEOUT_S", 15.0))

    # ── Per-source rate limits (requests per minute, 0 = off) ──
    alphavantage_rate_per_min: float = field(default_factory=lambda: _env_float("ALPHAVANTAGE_RATE_PER_MIN", 5.0))
    marketaux_rate_per_min: float = field(default_factory=lambda: _env_float("MARKETAUX_RATE_PER_MIN", 10.0))
    fmp_rate_per_min: float = field(default_factory=lambda: _env_float("FMP_RATE_PER_MIN", 60.0))

    # ── Endpoint settings ───────────────────────────────────────
    alphavantage_limit: int = field(default_factory=lambda: _env_int("ALPHAVANTAGE_LIMIT", 50))
    marketaux_max_pages: int = field(default_factory=lambda: _env_int("MARKETAUX_MAX_PAGES", 3))
    fmp_limit: int = field(default_factory=lambda: _env_int("FMP_LIMIT", 100))

    # ── Benzinga WebSocket settings ─────────────────────────────
    benzinga_ws_url: str = field(default_factory=lambda: os.getenv(
        "BENZINGA_WS_URL",
        "wss://api.benzinga.com/api/v1/news/stream",
    ))
    ws_ping_interval_s: float = field(default_factory=lambda: _env_float("WS_PING_INTERVAL_S", 20.0))
    ws_ping_timeout_s: float = field(default_factory=lambda: _env_float("WS_PING_TIMEOUT_S", 20.0))
    stream_queue_size: int = field(default_factory=lambda: _env_int("STREAM_QUEUE_SIZE", 1000))

    # ── Scraping (WebDriver) ────────────────────────────────────
    webdriver_url: str = field(default_factory=lambda: os.getenv("WEBDRIVER_URL", "http://localhost:4444"))
    scrape_url: str = field(default_factory=lambda: os.getenv("SCRAPE_URL", ""))
    scrape_link_selector: str = field(default_factory=lambda: os.getenv("SCRAPE_LINK_SELECTOR", "article h3 a"))
    scrape_poll_s: float = field(default_factory=lambda: _env_float("SCRAPE_POLL_S", 600.0))
    scrape_timeout_s: float = field(default_factory=lambda: _env_float("SCRAPE_TIMEOUT_S", 45.0))

    # ── Dedup cache ─────────────────────────────────────────────
    cache_capacity: int = field(default_factory=lambda: _env_int("CACHE_CAPACITY", 10_000))
    cache_ttl_s: float = field(default_factory=lambda: _env_float("CACHE_TTL_S", 2 * 86400))

    # ── Backoff / circuit breaker ───────────────────────────────
    backoff_initial_s: float = field(default_factory=lambda: _env_float("BACKOFF_INITIAL_S", 1.0))
    backoff_multiplier: float = field(default_factory=lambda: _env_float("BACKOFF_MULTIPLIER", 2.0))
    backoff_max_s: float = field(default_factory=lambda: _env_float("BACKOFF_MAX_S", 60.0))
    backoff_jitter: float = field(default_factory=lambda: _env_float("BACKOFF_JITTER", 0.10))
    failure_threshold: int = field(default_factory=lambda: _env_int("FAILURE_THRESHOLD", 3))
    cooldown_initial_s: float = field(default_factory=lambda: _env_float("COOLDOWN_INITIAL_S", 30.0))
    cooldown_max_s: float = field(default_factory=lambda: _env_float("COOLDOWN_MAX_S", 900.0))
    rate_limit_default_delay_s: float = field(default_factory=lambda: _env_float("RATE_LIMIT_DEFAULT_DELAY_S", 60.0))

    # ── Sink ────────────────────────────────────────────────────
    hold_queue_capacity: int = field(default_factory=lambda: _env_int("HOLD_QUEUE_CAPACITY", 5000))
    sqlite_path: str = field(default_factory=lambda: os.getenv("SQLITE_PATH", "data/news.db"))

    # ── Process ─────────────────────────────────────────────────
    shutdown_grace_s: float = field(default_factory=lambda: _env_float("SHUTDOWN_GRACE_S", 10.0))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    # ── Derived helpers ─────────────────────────────────────────

    @property
    def active_sources(self) -> list[str]:
        """List of enabled source labels for log output."""
        sources: list[str] = []
        if self.enable_alphavantage:
            sources.append("alphavantage")
        if self.enable_marketaux:
            sources.append("marketaux")
        if self.enable_fmp:
            sources.append("fmp")
        if self.enable_benzinga_ws:
            sources.append("benzinga_ws")
        if self.enable_scrape:
            sources.append("scrape")
        return sources

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems: list[str] = []
        for name in ("cache_capacity", "hold_queue_capacity", "failure_threshold", "stream_queue_size"):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be > 0")
        for name in (
            "cache_ttl_s", "backoff_initial_s", "backoff_max_s", "cooldown_initial_s",
            "cooldown_max_s", "request_timeout_s", "scrape_timeout_s",
            "alphavantage_poll_s", "marketaux_poll_s", "fmp_poll_s", "scrape_poll_s",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be > 0")
        if self.backoff_multiplier < 1.0:
            problems.append("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.backoff_jitter <= max(0.0, self.backoff_multiplier - 1.0):
            problems.append("backoff_jitter must be within [0, backoff_multiplier - 1]")
        if self.backoff_max_s < self.backoff_initial_s:
            problems.append("backoff_max_s must be >= backoff_initial_s")
        if self.cooldown_max_s < self.cooldown_initial_s:
            problems.append("cooldown_max_s must be >= cooldown_initial_s")
        if self.shutdown_grace_s < 0:
            problems.append("shutdown_grace_s must be >= 0")
        return problems


# ── Source descriptors ──────────────────────────────────────────

ALPHAVANTAGE_URL = "https://www.alphavantage.co/query"
MARKETAUX_URL = "https://api.marketaux.com/v1/news/all"
FMP_URL = "https://financialmodelingprep.com/stable/news/stock-latest"


def load_sources(cfg: Config) -> list[SourceDescriptor]:
    """Build descriptors for every enabled source that has credentials.

    A source with a missing credential is skipped with a warning.
    """
    out: list[SourceDescriptor] = []

    def _skip(label: str, env: str) -> None:
        logger.warning("%s enabled but %s is not set — source skipped.", label, env)

    if cfg.enable_alphavantage:
        if cfg.alphavantage_api_key:
            out.append(SourceDescriptor(
                source_id="alphavantage",
                kind=SourceKind.POLL,
                provider="alphavantage",
                endpoint=ALPHAVANTAGE_URL,
                api_key=cfg.alphavantage_api_key,
                cadence_s=cfg.alphavantage_poll_s,
                timeout_s=cfg.request_timeout_s,
                rate_limit_per_min=cfg.alphavantage_rate_per_min,
                symbols=cfg.symbols,
                topics=cfg.topics,
                options={"limit": cfg.alphavantage_limit},
            ))
        else:
            _skip("Alpha Vantage", "ALPHAVANTAGE_API_KEY")

    if cfg.enable_marketaux:
        if cfg.marketaux_api_key:
            out.append(SourceDescriptor(
                source_id="marketaux",
                kind=SourceKind.POLL,
                provider="marketaux",
                endpoint=MARKETAUX_URL,
                api_key=cfg.marketaux_api_key,
                cadence_s=cfg.marketaux_poll_s,
                timeout_s=cfg.request_timeout_s,
                rate_limit_per_min=cfg.marketaux_rate_per_min,
                symbols=cfg.symbols,
                options={"max_pages": cfg.marketaux_max_pages},
            ))
        else:
            _skip("Marketaux", "MARKETAUX_API_KEY")

    if cfg.enable_fmp:
        if cfg.fmp_api_key:
            out.append(SourceDescriptor(
                source_id="fmp",
                kind=SourceKind.POLL,
                provider="fmp",
                endpoint=FMP_URL,
                api_key=cfg.fmp_api_key,
                cadence_s=cfg.fmp_poll_s,
                timeout_s=cfg.request_timeout_s,
                rate_limit_per_min=cfg.fmp_rate_per_min,
                options={"limit": cfg.fmp_limit},
            ))
        else:
            _skip("FMP", "FMP_API_KEY")

    if cfg.enable_benzinga_ws:
        if cfg.benzinga_api_key:
            out.append(SourceDescriptor(
                source_id="benzinga_ws",
                kind=SourceKind.STREAM,
                provider="benzinga_ws",
                endpoint=cfg.benzinga_ws_url,
                api_key=cfg.benzinga_api_key,
                timeout_s=cfg.request_timeout_s,
                symbols=cfg.symbols,
                topics=cfg.topics,
                options={
                    "ping_interval_s": cfg.ws_ping_interval_s,
                    "ping_timeout_s": cfg.ws_ping_timeout_s,
                    "queue_size": cfg.stream_queue_size,
                },
            ))
        else:
            _skip("Benzinga WS", "BENZINGA_API_KEY")

    if cfg.enable_scrape:
        if cfg.scrape_url:
            out.append(SourceDescriptor(
                source_id="scrape",
                kind=SourceKind.SCRAPE,
                provider="scrape",
                endpoint=cfg.webdriver_url,
                cadence_s=cfg.scrape_poll_s,
                timeout_s=cfg.scrape_timeout_s,
                options={
                    "target_url": cfg.scrape_url,
                    "link_selector": cfg.scrape_link_selector,
                },
            ))
        else:
            _skip("Scraper", "SCRAPE_URL")

    return out
