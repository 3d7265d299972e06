"""Entry point: ``python -m newsstack.run``

Runs the ingestion core until SIGINT / SIGTERM, then shuts down
gracefully (bounded by ``SHUTDOWN_GRACE_S``).

Environment variables control which sources are active:
    ENABLE_ALPHAVANTAGE=1     (default: on)
    ENABLE_MARKETAUX=1        (default: on)
    ENABLE_FMP=1              (default: on)
    ENABLE_BENZINGA_WS=0      (default: off)
    ENABLE_SCRAPE=0           (default: off)
"""

from __future__ import annotations

import asyncio
import logging
import sys

from .config import Config
from .log_redaction import apply_global_log_redaction
from .pipeline import run_pipeline


def main() -> None:
    cfg = Config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    apply_global_log_redaction(secrets=(
        cfg.alphavantage_api_key, cfg.marketaux_api_key, cfg.fmp_api_key, cfg.benzinga_api_key,
    ))
    log = logging.getLogger(__name__)

    problems = cfg.validate()
    if problems:
        for p in problems:
            log.error("Invalid configuration: %s", p)
        sys.exit(2)

    log.info("Active sources: %s", cfg.active_sources)
    try:
        asyncio.run(run_pipeline(cfg, handle_signals=True))
    except KeyboardInterrupt:
        log.info("Interrupted.")


if __name__ == "__main__":
    main()
