"""Headline scraper driven through a remote W3C WebDriver endpoint.

One ``fetch_once()`` is one browser session:

  1. ``POST /session``                       create (headless)
  2. ``POST /session/{id}/url``              navigate to the target page
  3. ``POST /session/{id}/elements``         find headline links by CSS
  4. ``GET  .../element/{eid}/text``         headline text
     ``GET  .../element/{eid}/attribute/href``  link
  5. ``DELETE /session/{id}``                always, even on error/cancel

A fetch cancelled while the create request is in flight leaves that
request running; if the driver then hands back a session id it is
released in the background.  A create whose response never arrives
(client timeout) cannot be reaped from here, since W3C WebDriver has
no endpoint that lists sessions; the driver's own idle timeout covers
that case.

The WebDriver wire protocol is plain HTTP+JSON, so the same
``httpx.AsyncClient`` machinery as the REST adapters drives it.  A
navigation timeout, a missing element or a crashed driver are all
reported as ``TransientFetchError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urljoin

import httpx

from ._http import sanitize_exc
from .adapter import SourceAdapter
from .common_types import RawPayload, SourceDescriptor
from .errors import NewsstackError, TransientFetchError

logger = logging.getLogger(__name__)

# Key under which W3C WebDriver returns element references.
W3C_ELEMENT_KEY = "element-6066-11e4-a52e-4f735466cecf"

_RELEASE_TIMEOUT_S = 5.0
_MAX_HEADLINES = 50


class WebDriverSession:
    """Minimal async client for one W3C WebDriver session."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, *, source_id: str = "") -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.source_id = source_id
        self.session_id: Optional[str] = None

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = await self.client.request(method, url, json=payload)
        except httpx.TimeoutException:
            raise TransientFetchError(
                f"driver timeout on {method} {path}", source_id=self.source_id, reason="timeout",
            ) from None
        except httpx.TransportError as exc:
            raise TransientFetchError(
                f"driver unreachable: {sanitize_exc(exc)}", source_id=self.source_id, reason="driver",
            ) from None
        try:
            body = r.json()
        except ValueError:
            # A crashed driver tends to answer with an HTML error page.
            raise TransientFetchError(
                f"driver returned non-JSON (HTTP {r.status_code}) on {method} {path}",
                source_id=self.source_id, reason="driver",
            ) from None
        value = body.get("value") if isinstance(body, dict) else None
        if r.status_code >= 400:
            err = value.get("error", "") if isinstance(value, dict) else ""
            msg = value.get("message", "") if isinstance(value, dict) else ""
            if err == "no such element":
                reason = "element_not_found"
            elif err in ("timeout", "script timeout"):
                reason = "timeout"
            else:
                reason = "driver"
            raise TransientFetchError(
                f"{method} {path}: {err or r.status_code} {str(msg)[:200]}".strip(),
                source_id=self.source_id, reason=reason,
            )
        return value

    def _session_path(self, suffix: str = "") -> str:
        if self.session_id is None:
            raise RuntimeError("WebDriver session not created")
        return f"/session/{self.session_id}{suffix}"

    async def create(self, *, page_load_timeout_s: float) -> str:
        caps = {
            "capabilities": {
                "alwaysMatch": {
                    "browserName": "chrome",
                    "pageLoadStrategy": "normal",
                    "timeouts": {"pageLoad": int(page_load_timeout_s * 1000)},
                    "goog:chromeOptions": {"args": ["--headless=new", "--disable-gpu"]},
                },
            },
        }
        value = await self._call("POST", "/session", caps)
        session_id = value.get("sessionId") if isinstance(value, dict) else None
        if not session_id:
            raise TransientFetchError(
                "driver did not return a session id", source_id=self.source_id, reason="driver",
            )
        self.session_id = str(session_id)
        logger.info("%s: WebDriver session %s created", self.source_id, self.session_id)
        return self.session_id

    async def navigate(self, url: str) -> None:
        await self._call("POST", self._session_path("/url"), {"url": url})

    async def find_elements(self, css: str) -> List[str]:
        value = await self._call(
            "POST", self._session_path("/elements"), {"using": "css selector", "value": css},
        )
        if not isinstance(value, list):
            return []
        return [str(e[W3C_ELEMENT_KEY]) for e in value if isinstance(e, dict) and W3C_ELEMENT_KEY in e]

    async def element_text(self, element_id: str) -> str:
        value = await self._call("GET", self._session_path(f"/element/{element_id}/text"))
        return str(value or "")

    async def element_attribute(self, element_id: str, name: str) -> str:
        value = await self._call("GET", self._session_path(f"/element/{element_id}/attribute/{name}"))
        return str(value or "")

    async def delete(self) -> None:
        if self.session_id is None:
            return
        session_id = self.session_id
        try:
            await self._call("DELETE", f"/session/{session_id}")
        finally:
            self.session_id = None
            logger.info("%s: WebDriver session %s released", self.source_id, session_id)


class ScrapeAdapter(SourceAdapter):
    """Extracts ``{title, url}`` headline payloads from one page."""

    def __init__(self, descriptor: SourceDescriptor, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(descriptor)
        self.target_url = str(descriptor.options.get("target_url") or "")
        if not self.target_url:
            raise RuntimeError(f"{descriptor.source_id}: scrape target URL missing")
        self.link_selector = str(descriptor.options.get("link_selector") or "a")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=descriptor.timeout_s)
        self._pending_releases: Set[asyncio.Task] = set()

    async def _release(self, session: WebDriverSession) -> None:
        try:
            await asyncio.wait_for(session.delete(), timeout=_RELEASE_TIMEOUT_S)
        except (NewsstackError, asyncio.TimeoutError) as exc:
            logger.warning("%s: failed to release WebDriver session: %s", self.source_id, exc)

    def _release_in_background(self, session: WebDriverSession) -> asyncio.Task:
        task = asyncio.ensure_future(self._release(session))
        self._pending_releases.add(task)
        task.add_done_callback(self._pending_releases.discard)
        return task

    def _release_orphan(self, creating: asyncio.Future, session: WebDriverSession) -> None:
        if creating.cancelled() or creating.exception() is not None or session.session_id is None:
            return
        logger.info(
            "%s: releasing WebDriver session %s created after cancellation",
            self.source_id, session.session_id,
        )
        self._release_in_background(session)

    async def fetch_once(self) -> List[RawPayload]:
        session = WebDriverSession(self.client, self.descriptor.endpoint, source_id=self.source_id)
        creating = asyncio.ensure_future(session.create(page_load_timeout_s=self.descriptor.timeout_s))
        try:
            await asyncio.shield(creating)
        except asyncio.CancelledError:
            self._pending_releases.add(creating)
            creating.add_done_callback(self._pending_releases.discard)
            creating.add_done_callback(lambda t: self._release_orphan(t, session))
            raise
        try:
            await session.navigate(self.target_url)
            elements = await session.find_elements(self.link_selector)
            if not elements:
                raise TransientFetchError(
                    f"no elements match {self.link_selector!r}",
                    source_id=self.source_id, reason="element_not_found",
                )
            out: List[RawPayload] = []
            for eid in elements[:_MAX_HEADLINES]:
                title = await session.element_text(eid)
                href = await session.element_attribute(eid, "href")
                if not title.strip() and not href.strip():
                    continue
                out.append({"title": title, "url": urljoin(self.target_url, href) if href else ""})
            return out
        finally:
            if session.session_id is not None:
                # Runs to completion even if this fetch is being cancelled.
                await asyncio.shield(self._release_in_background(session))

    async def aclose(self) -> None:
        # A finished create may queue its release while we wait.
        while self._pending_releases:
            await asyncio.gather(*list(self._pending_releases), return_exceptions=True)
        if self._owns_client:
            await self.client.aclose()
