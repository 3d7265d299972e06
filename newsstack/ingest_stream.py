"""WebSocket news stream adapter (Benzinga-style push feed).

``open()`` connects, performs the subscribe handshake and returns a
:class:`WsStreamHandle`.  A reader task forwards every inbound article
into a **bounded** ``asyncio.Queue`` so a slow consumer applies
backpressure to the socket instead of buffering without limit.

Keepalive: protocol-level pings are sent every ``ping_interval_s`` and
a missing pong within ``ping_timeout_s`` tears the connection down, so
a silent half-open socket is detected within a bounded interval.
Application-level ``{"type": "ping"}`` frames are answered with
``{"type": "pong"}``.

Connection loss surfaces as ``TransientFetchError`` from the handle's
iterator; reconnecting is the Scheduler's job.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from ._http import sanitize_exc
from .adapter import SourceAdapter, StreamHandle
from .common_types import RawPayload, SourceDescriptor
from .errors import AuthError, TransientFetchError

logger = logging.getLogger(__name__)

# Default WS URL per Benzinga docs.  Override via BENZINGA_WS_URL env var.
DEFAULT_BENZINGA_WS_URL = "wss://api.benzinga.com/api/v1/news/stream"

_CLOSE_TIMEOUT_S = 5.0


def extract_payloads(msg: Any) -> List[Dict[str, Any]]:
    """Unpack WS message into a list of raw dicts."""
    if isinstance(msg, dict) and "data" in msg:
        data = msg["data"]
        if isinstance(data, list):
            return [m for m in data if isinstance(m, dict)]
        return [data] if isinstance(data, dict) else []
    if isinstance(msg, list):
        return [m for m in msg if isinstance(m, dict)]
    if isinstance(msg, dict):
        return [msg]
    return []


def _is_app_ping(msg: Any) -> bool:
    return isinstance(msg, dict) and str(msg.get("type") or msg.get("action") or "").lower() == "ping"


class _Closed:
    """Queue sentinel carrying the reason the reader stopped."""

    def __init__(self, error: Optional[TransientFetchError]) -> None:
        self.error = error


class WsStreamHandle(StreamHandle):
    """Live subscription; iterate to receive raw article dicts."""

    def __init__(self, ws: Any, *, source_id: str, queue_size: int = 1000) -> None:
        self.source_id = source_id
        self._ws = ws
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop(), name=f"ws-reader:{source_id}")

    async def _read_loop(self) -> None:
        error: Optional[TransientFetchError]
        try:
            async for message in self._ws:
                try:
                    msg = json.loads(message)
                except (TypeError, ValueError):
                    logger.debug("%s: dropping non-JSON frame", self.source_id)
                    continue
                if _is_app_ping(msg):
                    await self._ws.send(json.dumps({"type": "pong"}))
                    continue
                for payload in extract_payloads(msg):
                    await self._queue.put(payload)
            error = TransientFetchError(
                "stream closed by server", source_id=self.source_id, reason="connection_closed",
            )
        except ConnectionClosed as exc:
            error = TransientFetchError(
                f"connection lost: {exc}", source_id=self.source_id, reason="connection_lost",
            )
        except (OSError, WebSocketException) as exc:
            error = TransientFetchError(
                f"{type(exc).__name__}: {sanitize_exc(exc)}",
                source_id=self.source_id, reason="connection_lost",
            )
        if self._closing:
            error = None
        await self._queue.put(_Closed(error))

    async def __aiter__(self) -> AsyncIterator[RawPayload]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _Closed):
                if item.error is not None and not self._closing:
                    raise item.error
                return
            yield item

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader
        try:
            await asyncio.wait_for(self._ws.close(), timeout=_CLOSE_TIMEOUT_S)
        except (asyncio.TimeoutError, OSError, WebSocketException) as exc:
            logger.debug("%s: close failed: %s", self.source_id, exc)
        # Wake any consumer still waiting on the queue.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_Closed(None))
        logger.info("%s: stream closed", self.source_id)


class BenzingaStreamAdapter(SourceAdapter):
    """WebSocket news streamer with a subscribe handshake."""

    def __init__(self, descriptor: SourceDescriptor) -> None:
        super().__init__(descriptor)
        if not descriptor.api_key:
            raise RuntimeError(f"{descriptor.source_id}: API key missing")

    def subscribe_message(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"streams": ["news"]}
        if self.descriptor.symbols:
            data["symbols"] = list(self.descriptor.symbols)
        if self.descriptor.topics:
            data["topics"] = list(self.descriptor.topics)
        return {"action": "subscribe", "data": data}

    async def open(self) -> StreamHandle:
        opts = self.descriptor.options
        url = self.descriptor.endpoint or DEFAULT_BENZINGA_WS_URL
        try:
            ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    additional_headers={"Authorization": f"Token {self.descriptor.api_key}"},
                    ping_interval=float(opts.get("ping_interval_s", 20.0)),
                    ping_timeout=float(opts.get("ping_timeout_s", 20.0)),
                ),
                timeout=self.descriptor.timeout_s,
            )
        except InvalidStatus as exc:
            code = exc.response.status_code
            if code in (401, 403):
                raise AuthError(f"stream handshake rejected (HTTP {code})", source_id=self.source_id) from None
            raise TransientFetchError(
                f"stream handshake failed (HTTP {code})", source_id=self.source_id, reason="connect",
            ) from None
        except asyncio.TimeoutError:
            raise TransientFetchError(
                f"connect timed out after {self.descriptor.timeout_s}s",
                source_id=self.source_id, reason="timeout",
            ) from None
        except (OSError, WebSocketException) as exc:
            raise TransientFetchError(
                f"connect failed: {sanitize_exc(exc)}", source_id=self.source_id, reason="connect",
            ) from None

        try:
            await asyncio.wait_for(
                ws.send(json.dumps(self.subscribe_message())), timeout=self.descriptor.timeout_s,
            )
        except (asyncio.TimeoutError, OSError, WebSocketException) as exc:
            with contextlib.suppress(Exception):
                await ws.close()
            raise TransientFetchError(
                f"subscribe failed: {type(exc).__name__}", source_id=self.source_id, reason="connect",
            ) from None

        logger.info("%s: connected to %s", self.source_id, url)
        return WsStreamHandle(
            ws, source_id=self.source_id, queue_size=int(opts.get("queue_size", 1000)),
        )
