"""Shared HTTP helpers for the REST and WebDriver adapters.

Centralises URL/exception sanitisation so that API keys are never logged
in plain text, maps HTTP outcomes onto the fetch-error taxonomy, and
provides the per-source request rate limiter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from .errors import AuthError, ParseError, RateLimitedError, TransientFetchError

logger = logging.getLogger(__name__)

# Regex to strip API keys/tokens from URLs before logging.
_TOKEN_RE = re.compile(r"(apikey|api_key|api_token|token|key)=[^&\s]+", re.IGNORECASE)

# Status codes retried with backoff.  429 is handled separately.
_RETRYABLE: frozenset[int] = frozenset({408, 500, 502, 503, 504})

_AUTH_CODES: frozenset[int] = frozenset({401, 403})


def sanitize_url(url: str) -> str:
    """Remove apikey/token query params from a URL for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", url)


def sanitize_exc(exc: BaseException) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", str(exc))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header (seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        return max(0.0, parsedate_to_datetime(value).timestamp() - time.time())
    except (TypeError, ValueError, IndexError):
        return None


def _where(r: httpx.Response) -> str:
    try:
        return sanitize_url(str(r.request.url))
    except RuntimeError:  # response built without a request
        return ""


def raise_for_status(r: httpx.Response, source_id: str) -> None:
    """Map a non-2xx response onto the fetch-error taxonomy."""
    code = r.status_code
    if code < 400:
        return
    where = _where(r)
    msg = f"HTTP {code} from {where}"
    if code == 429:
        raise RateLimitedError(
            msg,
            source_id=source_id,
            retry_after_s=parse_retry_after(r.headers.get("retry-after")),
        )
    if code in _AUTH_CODES:
        raise AuthError(msg, source_id=source_id)
    if code in _RETRYABLE or code >= 500:
        raise TransientFetchError(msg, source_id=source_id, reason="http_5xx")
    # Remaining 4xx: the request itself is wrong, retrying cannot help.
    raise ParseError(msg, source_id=source_id, reason="http_4xx")


def safe_json(r: httpx.Response, source_id: str) -> Any:
    """Parse JSON response; raise ParseError with sanitized URL on failure."""
    ct = r.headers.get("content-type", "")
    try:
        return r.json()
    except (json.JSONDecodeError, ValueError):
        where = _where(r)
        raise ParseError(
            f"non-JSON body (content-type={ct!r}, status={r.status_code}, url={where})",
            source_id=source_id,
        ) from None


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    params: dict[str, Any],
    *,
    source_id: str,
    limiter: Optional["AsyncRateLimiter"] = None,
) -> Any:
    """GET *url* once and return the decoded JSON body.

    Network errors and timeouts surface as ``TransientFetchError``; HTTP
    failures are classified by :func:`raise_for_status`.  Retrying is the
    caller's business.
    """
    if limiter is not None:
        await limiter.acquire()
    try:
        r = await client.get(url, params=params)
    except httpx.TimeoutException as exc:
        raise TransientFetchError(
            f"timeout: {sanitize_exc(exc)}", source_id=source_id, reason="timeout",
        ) from None
    except httpx.TransportError as exc:
        raise TransientFetchError(
            f"{type(exc).__name__}: {sanitize_exc(exc)}", source_id=source_id, reason="network",
        ) from None
    raise_for_status(r, source_id)
    return safe_json(r, source_id)


class AsyncRateLimiter:
    """Spaces requests so that at most *rate_per_min* start per minute.

    Callers serialise on an ``asyncio.Lock``; each ``acquire()`` waits
    until the minimum interval since the previous request has elapsed.
    """

    def __init__(self, rate_per_min: float, *, clock=time.monotonic, sleep=asyncio.sleep) -> None:
        self.interval_s = 60.0 / rate_per_min if rate_per_min > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_at = 0.0

    async def acquire(self) -> None:
        if self.interval_s <= 0:
            return
        async with self._lock:
            now = self._clock()
            wait = self._next_at - now
            if wait > 0:
                logger.debug("Rate limiter: waiting %.2fs", wait)
                await self._sleep(wait)
                now = self._clock()
            self._next_at = max(now, self._next_at) + self.interval_s
