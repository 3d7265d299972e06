"""Unified internal schema shared across all news sources.

Every adapter (REST poll, WebSocket stream, WebDriver scrape) produces
raw ``dict`` payloads; the normaliser turns each one into a ``NewsItem``
before it enters the dedup cache and the sink.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

# Raw provider payload, exclusively owned by whoever holds it.
RawPayload = Dict[str, Any]


class SourceKind(str, enum.Enum):
    POLL = "poll"
    STREAM = "stream"
    SCRAPE = "scrape"


class Sentiment(str, enum.Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    UNKNOWN = "unknown"


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class NewsItem:
    """Provider-agnostic news record.  Immutable once constructed."""

    title: str
    summary: str
    link: str
    symbols: FrozenSet[str]
    topics: FrozenSet[str]
    sentiment: Sentiment
    published_at: datetime  # falls back to fetched_at when the source has none
    fetched_at: datetime
    source_id: str
    content_fingerprint: str
    id: Optional[int] = None  # assigned by the store on insert


@dataclass(frozen=True)
class SourceDescriptor:
    """Static per-source configuration, read-only after startup."""

    source_id: str
    kind: SourceKind
    provider: str  # selects the normaliser: "alphavantage" | "marketaux" | "fmp" | "benzinga_ws" | "scrape"
    endpoint: str
    api_key: str = field(default="", repr=False)
    cadence_s: float = 60.0  # poll / scrape only
    timeout_s: float = 15.0  # per fetch_once / per connect
    rate_limit_per_min: float = 0.0  # 0 disables the limiter
    symbols: tuple[str, ...] = ()
    topics: tuple[str, ...] = ()
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AdapterRunState:
    """Mutable per-source health, owned by the Scheduler's run-state map."""

    source_id: str
    circuit: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    current_delay_s: float = 0.0
    cooldown_s: float = 0.0
    open_count: int = 0  # consecutive openings, drives cooldown growth
    opened_at: Optional[float] = None
    retry_at: Optional[float] = None
    trial_in_flight: bool = False
    auth_failed: bool = False
    last_success_at: Optional[float] = None
    last_error: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "circuit": self.circuit.value,
            "consecutive_failures": self.consecutive_failures,
            "current_delay_s": round(self.current_delay_s, 3),
            "cooldown_s": round(self.cooldown_s, 3),
            "auth_failed": self.auth_failed,
            "last_success_at": self.last_success_at,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class NewsFilter:
    """Read-path query for the persistence collaborator."""

    symbol: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    sentiment: Optional[Sentiment] = None
