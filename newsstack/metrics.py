"""Event/Metrics Emitter backed by ``prometheus_client``.

Each pipeline owns its own ``CollectorRegistry`` so that several
pipelines (or tests) in one process never share counters.  Exposing the
registry over HTTP is left to the embedding service; ``render()``
returns the text exposition.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .common_types import CircuitState

CIRCUIT_STATE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class MetricsEmitter:
    """Counters and gauges for the ingestion core."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.fetched = Counter(
            "newsstack_items_fetched", "Raw payloads returned by adapters",
            ["source"], registry=self.registry,
        )
        self.deduped = Counter(
            "newsstack_items_deduped", "Items rejected as duplicates (cache or store)",
            ["source"], registry=self.registry,
        )
        self.persisted = Counter(
            "newsstack_items_persisted", "Items newly written to the store",
            ["source"], registry=self.registry,
        )
        self.failures = Counter(
            "newsstack_failures", "Classified failures per source",
            ["source", "reason"], registry=self.registry,
        )
        self.dropped = Counter(
            "newsstack_items_dropped", "Items lost before persistence",
            ["reason"], registry=self.registry,
        )
        self.circuit = Gauge(
            "newsstack_circuit_state", "Circuit state (0=closed,1=half-open,2=open)",
            ["source"], registry=self.registry,
        )

    # ── Emit ────────────────────────────────────────────────────

    def item_fetched(self, source_id: str, n: int = 1) -> None:
        if n > 0:
            self.fetched.labels(source=source_id).inc(n)

    def item_deduped(self, source_id: str) -> None:
        self.deduped.labels(source=source_id).inc()

    def item_persisted(self, source_id: str) -> None:
        self.persisted.labels(source=source_id).inc()

    def failure(self, source_id: str, reason: str) -> None:
        self.failures.labels(source=source_id, reason=reason).inc()

    def item_dropped(self, reason: str, n: int = 1) -> None:
        if n > 0:
            self.dropped.labels(reason=reason).inc(n)

    def circuit_changed(self, source_id: str, state: CircuitState) -> None:
        self.circuit.labels(source=source_id).set(CIRCUIT_STATE_VALUE[state])

    # ── Read back ───────────────────────────────────────────────

    def value(self, name: str, **labels: str) -> float:
        """Current value of sample *name* (e.g. ``"newsstack_items_persisted_total"``); 0 if unset."""
        v = self.registry.get_sample_value(name, labels or None)
        return float(v) if v is not None else 0.0

    def render(self) -> str:
        return generate_latest(self.registry).decode("utf-8")
