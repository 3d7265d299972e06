"""Wiring: Config → source adapters → Scheduler → Sink → SQLite.

``build_pipeline(cfg)`` assembles every component without starting
anything; ``run_pipeline(cfg)`` runs it until shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Dict, Optional, Type

from .adapter import SourceAdapter
from .common_types import SourceDescriptor
from .config import Config, load_sources
from .dedup import DedupCache
from .ingest_rest import AlphaVantageAdapter, FmpAdapter, MarketauxAdapter
from .ingest_scrape import ScrapeAdapter
from .ingest_stream import BenzingaStreamAdapter
from .metrics import MetricsEmitter
from .retry import BackoffPolicy, RetryController
from .scheduler import Scheduler
from .sink import SinkGateway
from .store_sqlite import NewsStore, SqliteNewsStore, open_store

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, Type[SourceAdapter]] = {
    "alphavantage": AlphaVantageAdapter,
    "marketaux": MarketauxAdapter,
    "fmp": FmpAdapter,
    "benzinga_ws": BenzingaStreamAdapter,
    "scrape": ScrapeAdapter,
}


def build_adapter(descriptor: SourceDescriptor) -> SourceAdapter:
    """Instantiate the adapter class registered for ``descriptor.provider``."""
    try:
        cls = ADAPTERS[descriptor.provider]
    except KeyError:
        raise ValueError(f"no adapter registered for provider {descriptor.provider!r}") from None
    return cls(descriptor)


@dataclass
class Pipeline:
    config: Config
    scheduler: Scheduler
    sink: SinkGateway
    store: NewsStore
    metrics: MetricsEmitter

    async def run(self) -> None:
        await self.scheduler.run()

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()


def build_pipeline(cfg: Config, *, store: Optional[NewsStore] = None) -> Pipeline:
    """Assemble all components for *cfg*.  Must be called inside a running event loop."""
    metrics = MetricsEmitter()
    policy = BackoffPolicy(
        initial_s=cfg.backoff_initial_s,
        multiplier=cfg.backoff_multiplier,
        max_s=cfg.backoff_max_s,
        jitter=cfg.backoff_jitter,
    )
    controller = RetryController(
        policy,
        failure_threshold=cfg.failure_threshold,
        cooldown_initial_s=cfg.cooldown_initial_s,
        cooldown_max_s=cfg.cooldown_max_s,
        rate_limit_default_s=cfg.rate_limit_default_delay_s,
        clock=time.monotonic,
        on_transition=metrics.circuit_changed,
    )
    if store is None:
        store = open_store(cfg.sqlite_path)
    sink = SinkGateway(store, metrics, capacity=cfg.hold_queue_capacity, policy=policy)
    scheduler = Scheduler(
        dedup=DedupCache(cfg.cache_capacity, cfg.cache_ttl_s),
        sink=sink,
        metrics=metrics,
        controller=controller,
        shutdown_grace_s=cfg.shutdown_grace_s,
    )
    for desc in load_sources(cfg):
        try:
            adapter = build_adapter(desc)
        except (RuntimeError, ValueError) as exc:
            logger.warning("%s: not started: %s", desc.source_id, exc)
            continue
        scheduler.register(desc, adapter)
    if not scheduler.source_ids:
        logger.warning("No sources configured — the pipeline will idle.")
    return Pipeline(config=cfg, scheduler=scheduler, sink=sink, store=store, metrics=metrics)


async def run_pipeline(cfg: Optional[Config] = None, *, handle_signals: bool = False) -> None:
    """Run the ingestion core until shutdown is requested or the task is cancelled.

    With *handle_signals*, SIGINT and SIGTERM trigger a graceful shutdown.
    """
    if cfg is None:
        cfg = Config()
    pipeline = build_pipeline(cfg)
    shutdown_tasks: set[asyncio.Task] = set()

    def _request_shutdown() -> None:
        task = asyncio.ensure_future(pipeline.shutdown())
        shutdown_tasks.add(task)
        task.add_done_callback(shutdown_tasks.discard)

    if handle_signals:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _request_shutdown)
            except NotImplementedError:  # Windows
                pass
    logger.info("newsstack pipeline started (sources=%s).", pipeline.scheduler.source_ids)
    try:
        await pipeline.run()
    finally:
        if isinstance(pipeline.store, SqliteNewsStore):
            pipeline.store.close()
        logger.info("newsstack pipeline stopped.")
