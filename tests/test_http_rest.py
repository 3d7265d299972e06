"""Tests for newsstack._http and newsstack.ingest_rest against httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from newsstack._http import (
    AsyncRateLimiter,
    parse_retry_after,
    raise_for_status,
    sanitize_exc,
    sanitize_url,
)
from newsstack.common_types import SourceDescriptor, SourceKind
from newsstack.config import ALPHAVANTAGE_URL, FMP_URL, MARKETAUX_URL
from newsstack.errors import (
    AuthError,
    ParseError,
    RateLimitedError,
    TransientFetchError,
)
from newsstack.ingest_rest import AlphaVantageAdapter, FmpAdapter, MarketauxAdapter

# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════


def _descriptor(provider: str, endpoint: str, **kw: Any) -> SourceDescriptor:
    return SourceDescriptor(
        source_id=provider,
        kind=SourceKind.POLL,
        provider=provider,
        endpoint=endpoint,
        api_key=kw.pop("api_key", "secret_key_123"),
        **kw,
    )


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _query(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(str(request.url)).query).items()}


def _fetch(adapter) -> Any:
    async def go():
        try:
            return await adapter.fetch_once()
        finally:
            await adapter.client.aclose()
    return asyncio.run(go())


# ═══════════════════════════════════════════════════════════════
# Shared HTTP helpers
# ═══════════════════════════════════════════════════════════════

class TestSanitize:

    def test_url_keys_masked(self):
        url = "https://x.com/q?apikey=SECRET&symbols=AAPL&api_token=T0K"
        out = sanitize_url(url)
        assert "SECRET" not in out and "T0K" not in out
        assert "symbols=AAPL" in out

    def test_exception_text_masked(self):
        exc = RuntimeError("failed GET https://x.com/?token=abc123")
        assert "abc123" not in sanitize_exc(exc)


class TestRetryAfter:

    def test_seconds(self):
        assert parse_retry_after("12") == 12.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("whenever") is None

    def test_http_date_in_the_past_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


class TestStatusClassification:

    @pytest.mark.parametrize("code", [500, 502, 503, 504, 408])
    def test_transient(self, code):
        with pytest.raises(TransientFetchError) as ei:
            raise_for_status(httpx.Response(code), "fmp")
        assert not isinstance(ei.value, RateLimitedError)

    def test_rate_limited_carries_retry_after(self):
        with pytest.raises(RateLimitedError) as ei:
            raise_for_status(httpx.Response(429, headers={"Retry-After": "30"}), "fmp")
        assert ei.value.retry_after_s == 30.0
        assert ei.value.retryable

    @pytest.mark.parametrize("code", [401, 403])
    def test_auth(self, code):
        with pytest.raises(AuthError):
            raise_for_status(httpx.Response(code), "fmp")

    def test_other_4xx_is_parse(self):
        with pytest.raises(ParseError):
            raise_for_status(httpx.Response(404), "fmp")

    def test_2xx_passes(self):
        raise_for_status(httpx.Response(200), "fmp")


class TestRateLimiter:

    def test_spaces_requests(self):
        now = [0.0]
        slept: list[float] = []

        async def fake_sleep(s: float) -> None:
            slept.append(s)
            now[0] += s

        limiter = AsyncRateLimiter(60, clock=lambda: now[0], sleep=fake_sleep)

        async def go():
            for _ in range(3):
                await limiter.acquire()

        asyncio.run(go())
        assert slept == [1.0, 1.0]

    def test_zero_rate_disables(self):
        limiter = AsyncRateLimiter(0)
        asyncio.run(limiter.acquire())
        assert limiter.interval_s == 0.0


# ═══════════════════════════════════════════════════════════════
# Adapters
# ═══════════════════════════════════════════════════════════════

class TestAlphaVantage:

    def _adapter(self, handler, **kw) -> AlphaVantageAdapter:
        desc = _descriptor(
            "alphavantage", ALPHAVANTAGE_URL,
            symbols=("AAPL", "MSFT"), topics=("earnings",), options={"limit": 50}, **kw,
        )
        return AlphaVantageAdapter(desc, client=_client(handler))

    def test_request_parameters_and_window(self):
        seen: list[dict[str, str]] = []
        feed = [
            {"title": "a", "url": "https://x/a", "time_published": "20250120T143000"},
            {"title": "b", "url": "https://x/b", "time_published": "20250120T150500"},
            {"title": "c", "url": "https://x/c"},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(_query(request))
            return httpx.Response(200, json={"feed": feed})

        adapter = self._adapter(handler)

        async def go():
            try:
                first = await adapter.fetch_once()
                await adapter.fetch_once()
                return first
            finally:
                await adapter.client.aclose()

        items = asyncio.run(go())
        assert len(items) == 3
        q = seen[0]
        assert q["function"] == "NEWS_SENTIMENT"
        assert q["tickers"] == "AAPL,MSFT"
        assert q["topics"] == "earnings"
        assert q["sort"] == "LATEST"
        assert "time_from" not in q
        # Second poll asks only for the delta.
        assert seen[1]["time_from"] == "20250120T1505"
        assert adapter.time_from == "20250120T1505"

    def test_note_body_is_rate_limited(self):
        adapter = self._adapter(lambda r: httpx.Response(200, json={"Note": "5 calls per minute"}))
        with pytest.raises(RateLimitedError):
            _fetch(adapter)

    def test_error_message_is_parse_error(self):
        adapter = self._adapter(lambda r: httpx.Response(200, json={"Error Message": "Invalid API call"}))
        with pytest.raises(ParseError):
            _fetch(adapter)

    def test_non_json_is_parse_error(self):
        adapter = self._adapter(lambda r: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(ParseError) as ei:
            _fetch(adapter)
        assert "secret_key_123" not in str(ei.value)

    def test_missing_key_rejected(self):
        with pytest.raises(RuntimeError, match="API key missing"):
            AlphaVantageAdapter(_descriptor("alphavantage", ALPHAVANTAGE_URL, api_key=""))


class TestMarketaux:

    def _adapter(self, handler, max_pages=3) -> MarketauxAdapter:
        desc = _descriptor("marketaux", MARKETAUX_URL, symbols=("NVDA",), options={"max_pages": max_pages})
        return MarketauxAdapter(desc, client=_client(handler))

    def test_paginates_until_short_page(self):
        pages: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            q = _query(request)
            pages.append(q["page"])
            assert q["api_token"] == "secret_key_123"
            assert q["symbols"] == "NVDA"
            n = 3 if q["page"] == "1" else 1
            data = [{"title": f"{q['page']}-{i}", "url": f"https://x/{q['page']}/{i}"} for i in range(n)]
            return httpx.Response(200, json={"meta": {"returned": n, "limit": 3}, "data": data})

        items = _fetch(self._adapter(handler))
        assert pages == ["1", "2"]
        assert [it["title"] for it in items] == ["1-0", "1-1", "1-2", "2-0"]

    def test_stops_at_max_pages(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            data = [{"title": "t", "url": "u"}] * 2
            return httpx.Response(200, json={"meta": {"returned": 2, "limit": 2}, "data": data})

        items = _fetch(self._adapter(handler, max_pages=2))
        assert len(calls) == 2
        assert len(items) == 4

    def test_server_error_is_transient(self):
        with pytest.raises(TransientFetchError):
            _fetch(self._adapter(lambda r: httpx.Response(503)))

    def test_unauthorized_is_auth(self):
        with pytest.raises(AuthError):
            _fetch(self._adapter(lambda r: httpx.Response(401, json={"error": "invalid token"})))


class TestFmp:

    def _adapter(self, handler) -> FmpAdapter:
        return FmpAdapter(_descriptor("fmp", FMP_URL, options={"limit": 25}), client=_client(handler))

    def test_list_body(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(_query(request))
            return httpx.Response(200, json=[{"title": "t", "url": "u"}, "junk", None])

        items = _fetch(self._adapter(handler))
        assert items == [{"title": "t", "url": "u"}]
        assert seen[0]["limit"] == "25"
        assert seen[0]["page"] == "0"

    def test_error_message_dict(self):
        with pytest.raises(ParseError):
            _fetch(self._adapter(lambda r: httpx.Response(200, json={"Error Message": "Limit Reach"})))

    def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientFetchError) as ei:
            _fetch(self._adapter(handler))
        assert ei.value.reason == "network"

    def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransientFetchError) as ei:
            _fetch(self._adapter(handler))
        assert ei.value.reason == "timeout"

    def test_429_uses_retry_after(self):
        body = json.dumps({"message": "Too many"})
        adapter = self._adapter(lambda r: httpx.Response(429, text=body, headers={"retry-after": "7"}))
        with pytest.raises(RateLimitedError) as ei:
            _fetch(adapter)
        assert ei.value.retry_after_s == 7.0
