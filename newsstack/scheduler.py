"""Scheduler: one supervised asyncio task per registered source.

Poll and scrape sources run on a wall-clock cadence
(``next_due = now + cadence`` after every due run, whatever its
outcome).  A transient failure in the closed state schedules an extra
retry at ``failure_time + delay`` if that comes before the next due
time; an open circuit skips runs until its cooldown has elapsed.

Stream sources connect, consume the handle until it drops, then
reconnect after the controller's backoff delay.  A connection counts
as a success once it delivers a frame or stays up for
``_STREAM_STABLE_S``; a feed that accepts and immediately drops keeps
counting failures and eventually opens the circuit.

Every fetch and connect is bounded by the descriptor's ``timeout_s``;
one source hanging or failing never delays another.  The sink worker
runs as its own task.

Shutdown (``shutdown()`` or cancelling ``run()``):

  1. stop admitting new fetches,
  2. cancel stream and scrape tasks at once (closing sockets and
     WebDriver sessions),
  3. give in-flight poll fetches ``shutdown_grace_s``, then cancel,
  4. let the sink flush for what is left of the grace period; residue
     is counted as ``dropped{reason="shutdown"}``,
  5. close every adapter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ._http import sanitize_exc
from .adapter import SourceAdapter
from .common_types import AdapterRunState, RawPayload, SourceDescriptor, SourceKind
from .dedup import DedupCache
from .errors import AuthError, FetchError, NewsstackError, NormalizeError, TransientFetchError
from .metrics import MetricsEmitter
from .normalize import normalize
from .retry import RetryController
from .sink import SinkGateway

logger = logging.getLogger(__name__)

# A stream that stays up this long counts as a success even if it
# delivered no frames before dropping.
_STREAM_STABLE_S = 60.0


@dataclass
class _Source:
    descriptor: SourceDescriptor
    adapter: SourceAdapter
    next_due: float = 0.0
    task: Optional[asyncio.Task] = None


class Scheduler:
    """Drives every registered source until shut down."""

    def __init__(
        self,
        *,
        dedup: DedupCache,
        sink: SinkGateway,
        metrics: MetricsEmitter,
        controller: Optional[RetryController] = None,
        shutdown_grace_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.dedup = dedup
        self.sink = sink
        self.metrics = metrics
        self.controller = controller or RetryController(
            clock=clock, on_transition=metrics.circuit_changed,
        )
        self.shutdown_grace_s = shutdown_grace_s
        self._clock = clock
        self._sleep = sleep
        self._sources: Dict[str, _Source] = {}
        self._stopping = asyncio.Event()
        self._finished = asyncio.Event()
        self._running = False
        self._sink_task: Optional[asyncio.Task] = None

    # ── Registration / introspection ────────────────────────────

    def register(self, descriptor: SourceDescriptor, adapter: SourceAdapter) -> None:
        sid = descriptor.source_id
        if sid in self._sources:
            raise ValueError(f"source {sid!r} already registered")
        src = _Source(descriptor=descriptor, adapter=adapter)
        self._sources[sid] = src
        self.controller.register(sid)
        self.metrics.circuit_changed(sid, self.controller.state(sid).circuit)
        logger.info(
            "Registered %s source %s (cadence=%.0fs, timeout=%.0fs)",
            descriptor.kind.value, sid, descriptor.cadence_s, descriptor.timeout_s,
        )
        if self._running and not self._stopping.is_set():
            src.task = asyncio.create_task(self._source_loop(src), name=f"source:{sid}")

    @property
    def source_ids(self) -> List[str]:
        return list(self._sources)

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def run_state(self, source_id: str) -> AdapterRunState:
        return self.controller.state(source_id)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Plain-dict view of every source's run state."""
        out: Dict[str, Dict[str, Any]] = {}
        for sid, src in self._sources.items():
            d = self.controller.state(sid).as_dict()
            d["kind"] = src.descriptor.kind.value
            if src.descriptor.kind is not SourceKind.STREAM:
                d["next_due_in_s"] = round(max(0.0, src.next_due - self._clock()), 3)
            out[sid] = d
        out["_sink"] = {"pending": self.sink.pending, "unavailable": self.sink.unavailable}
        return out

    # ── Lifecycle ───────────────────────────────────────────────

    async def run(self) -> None:
        """Drive all sources until ``shutdown()`` is called or this task is cancelled."""
        if self._running:
            raise RuntimeError("Scheduler is already running")
        self._running = True
        logger.info("Scheduler starting with %d source(s)", len(self._sources))
        self._sink_task = asyncio.create_task(self.sink.run(), name="sink")
        for sid, src in self._sources.items():
            src.task = asyncio.create_task(self._source_loop(src), name=f"source:{sid}")
        try:
            await self._stopping.wait()
        finally:
            await self._teardown()

    async def shutdown(self) -> None:
        """Request a cooperative stop and wait for teardown to finish."""
        if not self._stopping.is_set():
            logger.info("Shutdown requested")
            self._stopping.set()
        if self._running:
            await self._finished.wait()
        else:
            await self._close_adapters()

    async def _teardown(self) -> None:
        self._stopping.set()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_grace_s

        immediate = [
            s.task for s in self._sources.values()
            if s.task is not None and s.descriptor.kind in (SourceKind.STREAM, SourceKind.SCRAPE)
        ]
        polls = [
            s.task for s in self._sources.values()
            if s.task is not None and s.descriptor.kind is SourceKind.POLL
        ]
        if immediate:
            logger.info("Shutdown: closing %d stream/scrape source(s)", len(immediate))
            for t in immediate:
                t.cancel()
            await asyncio.gather(*immediate, return_exceptions=True)
        if polls:
            _, pending = await asyncio.wait(polls, timeout=max(0.0, deadline - loop.time()))
            if pending:
                logger.warning("Shutdown: force-aborting %d poll source(s) after grace", len(pending))
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._sink_task is not None:
            left = await self.sink.drain(deadline - loop.time())
            if left:
                logger.warning("Shutdown: sink did not flush in time (%d pending)", left)
            self._sink_task.cancel()
            await asyncio.gather(self._sink_task, return_exceptions=True)
        self.sink.discard_pending("shutdown")

        await self._close_adapters()
        self._running = False
        self._finished.set()
        logger.info("Shutdown complete")

    async def _close_adapters(self) -> None:
        for sid, src in self._sources.items():
            try:
                await src.adapter.aclose()
            except Exception as exc:
                logger.warning("%s: error while closing adapter: %s", sid, sanitize_exc(exc))

    async def _pause(self, delay: float) -> None:
        """Sleep up to *delay* seconds; returns early on shutdown."""
        if delay <= 0:
            await asyncio.sleep(0)
            return
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ── Per-source loops ────────────────────────────────────────

    async def _source_loop(self, src: _Source) -> None:
        sid = src.descriptor.source_id
        try:
            if src.descriptor.kind is SourceKind.STREAM:
                await self._stream_loop(src)
            else:
                await self._poll_loop(src)
        except asyncio.CancelledError:
            logger.debug("%s: task cancelled", sid)
            raise
        except Exception:
            # A bug in one source must not take the others down.
            logger.exception("%s: source loop crashed", sid)

    async def _poll_loop(self, src: _Source) -> None:
        sid = src.descriptor.source_id
        src.next_due = self._clock()
        while not self._stopping.is_set():
            if self.controller.state(sid).auth_failed:
                logger.info("%s: polling stopped (credentials rejected)", sid)
                return
            now = self._clock()
            retry_at = self.controller.retry_at(sid)
            due = now >= src.next_due
            if due or (retry_at is not None and now >= retry_at):
                if due:
                    src.next_due = now + src.descriptor.cadence_s
                await self.run_once(sid)
                if not due and self.controller.retry_at(sid) == retry_at:
                    # Trial held elsewhere; wait for the next due run.
                    await self._pause(src.next_due - self._clock())
                continue
            wake = src.next_due if retry_at is None else min(src.next_due, retry_at)
            await self._pause(wake - now)

    async def _stream_loop(self, src: _Source) -> None:
        sid = src.descriptor.source_id
        while not self._stopping.is_set():
            if self.controller.state(sid).auth_failed:
                logger.info("%s: stream stopped (credentials rejected)", sid)
                return
            if not self.controller.allow(sid):
                retry_at = self.controller.retry_at(sid)
                wait = retry_at - self._clock() if retry_at is not None else self.controller.policy.max_s
                await self._pause(wait)
                continue

            try:
                handle = await asyncio.wait_for(src.adapter.open(), timeout=src.descriptor.timeout_s)
            except Exception as exc:
                delay = self._on_failure(src, self._classify(src, exc))
                if delay is None:
                    delay = self.controller.policy.initial_s
                if delay != float("inf"):
                    logger.info("%s: reconnecting in %.1fs", sid, delay)
                    await self._pause(delay)
                continue

            logger.info("%s: stream connected", sid)
            connected_at = self._clock()
            succeeded = False
            error: Optional[NewsstackError] = None
            try:
                async for raw in handle:
                    if not succeeded:
                        self.controller.record_success(sid)
                        succeeded = True
                    self.metrics.item_fetched(sid)
                    self._ingest(src, raw)
                if not self._stopping.is_set():
                    error = TransientFetchError(
                        "stream ended", source_id=sid, reason="connection_closed",
                    )
            except Exception as exc:
                error = self._classify(src, exc)
            finally:
                await handle.close()

            if self._stopping.is_set() or error is None:
                return
            if not succeeded and self._clock() - connected_at >= _STREAM_STABLE_S:
                # A quiet feed that held the connection is still healthy.
                self.controller.record_success(sid)
            delay = self._on_failure(src, error)
            if delay is None:
                delay = self.controller.policy.initial_s
            if delay == float("inf"):
                continue
            logger.warning("%s: stream dropped (%s); reconnecting in %.1fs", sid, error.reason, delay)
            await self._pause(delay)

    # ── One fetch ───────────────────────────────────────────────

    async def run_once(self, source_id: str) -> int:
        """One fetch → normalise → dedup → hold-queue pass for a poll/scrape source.

        Respects the circuit: returns 0 without fetching when the source
        is not allowed to run.  Returns the number of items admitted.
        """
        src = self._sources[source_id]
        if src.descriptor.kind is SourceKind.STREAM:
            raise ValueError(f"{source_id} is a stream source; it has no single fetch")
        if self._stopping.is_set():
            return 0
        if not self.controller.allow(source_id):
            logger.debug(
                "%s: skipped (circuit %s)", source_id, self.controller.state(source_id).circuit.value,
            )
            return 0
        try:
            raws = await asyncio.wait_for(src.adapter.fetch_once(), timeout=src.descriptor.timeout_s)
        except Exception as exc:
            self._on_failure(src, self._classify(src, exc))
            return 0

        self.controller.record_success(source_id)
        self.metrics.item_fetched(source_id, len(raws))
        logger.info("%s: fetched %d item(s)", source_id, len(raws))
        admitted = 0
        for raw in raws:
            if self._ingest(src, raw):
                admitted += 1
        if admitted:
            logger.debug("%s: %d new item(s) queued for persistence", source_id, admitted)
        return admitted

    def _ingest(self, src: _Source, raw: RawPayload) -> bool:
        sid = src.descriptor.source_id
        try:
            item = normalize(src.descriptor.provider, raw, source_id=sid)
        except NormalizeError as exc:
            self.metrics.failure(sid, exc.reason)
            logger.debug("%s: payload dropped (%s): %s", sid, exc.reason, exc)
            return False
        except Exception:
            logger.exception("%s: normaliser failed; payload dropped", sid)
            self.metrics.failure(sid, "parse")
            return False
        if not self.dedup.admit(item):
            self.metrics.item_deduped(sid)
            return False
        self.sink.submit(item)
        return True

    # ── Failure handling ────────────────────────────────────────

    def _classify(self, src: _Source, exc: Exception) -> NewsstackError:
        sid = src.descriptor.source_id
        if isinstance(exc, FetchError):
            return exc
        if isinstance(exc, asyncio.TimeoutError):
            return TransientFetchError(
                f"timed out after {src.descriptor.timeout_s:.0f}s", source_id=sid, reason="timeout",
            )
        logger.exception("%s: unexpected adapter error", sid)
        return TransientFetchError(
            f"{type(exc).__name__}: {sanitize_exc(exc)}", source_id=sid, reason="unexpected",
        )

    def _on_failure(self, src: _Source, exc: NewsstackError) -> Optional[float]:
        sid = src.descriptor.source_id
        delay = self.controller.record_failure(sid, exc)
        self.metrics.failure(sid, exc.reason)
        if isinstance(exc, AuthError):
            return delay
        if delay is None:
            logger.warning("%s: fetch failed (%s): %s", sid, exc.reason, sanitize_exc(exc))
        else:
            logger.warning(
                "%s: fetch failed (%s): %s; next attempt in %.1fs",
                sid, exc.reason, sanitize_exc(exc), delay,
            )
        return delay
