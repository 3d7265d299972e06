"""Polling (REST) news adapters.

Three providers, all on a shared ``httpx.AsyncClient``:
 1. Alpha Vantage  ``/query?function=NEWS_SENTIMENT``  (incremental via ``time_from``)
 2. Marketaux      ``/v1/news/all``                    (paginated)
 3. FMP            ``/stable/news/stock-latest``

``fetch_once()`` returns raw article dicts in provider order; the
Scheduler hands them to the normaliser.  Retrying is *not* done here:
every failure is raised once, classified, and the Retry/Backoff
Controller decides what happens next.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from ._http import AsyncRateLimiter, get_json
from .adapter import SourceAdapter
from .common_types import RawPayload, SourceDescriptor
from .errors import ParseError, RateLimitedError

logger = logging.getLogger(__name__)

USER_AGENT = "newsstack/1.0 (+ingest)"


def _as_list(x: Any, source_id: str) -> List[RawPayload]:
    """Safely coerce *x* to a list of dicts."""
    if not isinstance(x, list):
        if x is not None:
            logger.warning(
                "%s returned %s instead of list — 0 items ingested.",
                source_id, type(x).__name__,
            )
        return []
    return [item for item in x if isinstance(item, dict)]


class RestPollAdapter(SourceAdapter):
    """Base for API-key authenticated JSON polling adapters."""

    def __init__(self, descriptor: SourceDescriptor, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(descriptor)
        if not descriptor.api_key:
            raise RuntimeError(f"{descriptor.source_id}: API key missing")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=descriptor.timeout_s,
            headers={"User-Agent": USER_AGENT},
        )
        self.limiter = AsyncRateLimiter(descriptor.rate_limit_per_min)

    async def _get(self, params: Dict[str, Any]) -> Any:
        return await get_json(
            self.client,
            self.descriptor.endpoint,
            params,
            source_id=self.source_id,
            limiter=self.limiter,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# =====================================================================
# Alpha Vantage
# =====================================================================

# time_published is "YYYYMMDDTHHMMSS"; time_from takes "YYYYMMDDTHHMM".
_AV_PUBLISHED_RE = re.compile(r"^\d{8}T\d{4}")


class AlphaVantageAdapter(RestPollAdapter):
    """NEWS_SENTIMENT poller with an in-memory ``time_from`` window."""

    def __init__(self, descriptor: SourceDescriptor, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(descriptor, client)
        self.time_from: Optional[str] = None

    def _params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "function": "NEWS_SENTIMENT",
            "sort": "LATEST",
            "limit": int(self.descriptor.options.get("limit", 50)),
            "apikey": self.descriptor.api_key,
        }
        if self.descriptor.symbols:
            params["tickers"] = ",".join(self.descriptor.symbols)
        if self.descriptor.topics:
            params["topics"] = ",".join(self.descriptor.topics)
        if self.time_from:
            params["time_from"] = self.time_from
        return params

    async def fetch_once(self) -> List[RawPayload]:
        data = await self._get(self._params())
        if not isinstance(data, dict):
            raise ParseError(
                f"expected object, got {type(data).__name__}", source_id=self.source_id,
            )
        # Soft rate limit: HTTP 200 with an advisory instead of a feed.
        if "Note" in data or "Information" in data:
            raise RateLimitedError(
                str(data.get("Note") or data.get("Information"))[:200],
                source_id=self.source_id,
            )
        if "Error Message" in data:
            raise ParseError(str(data["Error Message"])[:200], source_id=self.source_id)

        feed = _as_list(data.get("feed"), self.source_id)
        # Only real timestamps advance the window.
        stamps = [
            str(it.get("time_published"))
            for it in feed
            if _AV_PUBLISHED_RE.match(str(it.get("time_published") or ""))
        ]
        if stamps:
            newest = max(stamps)[:13]
            if self.time_from is None or newest > self.time_from:
                self.time_from = newest
        return feed


# =====================================================================
# Marketaux
# =====================================================================

class MarketauxAdapter(RestPollAdapter):
    """Paginated ``/v1/news/all`` poller."""

    async def fetch_once(self) -> List[RawPayload]:
        max_pages = max(1, int(self.descriptor.options.get("max_pages", 1)))
        out: List[RawPayload] = []
        for page in range(1, max_pages + 1):
            params: Dict[str, Any] = {
                "api_token": self.descriptor.api_key,
                "language": "en",
                "filter_entities": "true",
                "page": page,
            }
            if self.descriptor.symbols:
                params["symbols"] = ",".join(self.descriptor.symbols)
            data = await self._get(params)
            if not isinstance(data, dict):
                raise ParseError(
                    f"expected object, got {type(data).__name__}", source_id=self.source_id,
                )
            items = _as_list(data.get("data"), self.source_id)
            out.extend(items)
            meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
            returned = meta.get("returned", len(items))
            limit = meta.get("limit", 0)
            # Short page (or no usable meta) means we reached the end.
            if not items or not isinstance(limit, int) or not isinstance(returned, int):
                break
            if limit <= 0 or returned < limit:
                break
        return out


# =====================================================================
# FMP
# =====================================================================

class FmpAdapter(RestPollAdapter):
    """``/stable/news/stock-latest`` poller (newest page only)."""

    async def fetch_once(self) -> List[RawPayload]:
        params: Dict[str, Any] = {
            "page": 0,
            "limit": int(self.descriptor.options.get("limit", 100)),
            "apikey": self.descriptor.api_key,
        }
        data = await self._get(params)
        if isinstance(data, dict) and "Error Message" in data:
            raise ParseError(str(data["Error Message"])[:200], source_id=self.source_id)
        return _as_list(data, self.source_id)
