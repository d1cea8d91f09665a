"""Prometheus metrics for the entity query engine."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all entity query metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Query metrics
        self.queries_total = Counter(
            "entity_query_queries_total",
            "Total number of queries executed",
            ["kind", "status"],  # kind: entity, tuple, scalar, count; status: success, error
            registry=self._registry,
        )

        self.query_latency_seconds = Histogram(
            "entity_query_query_latency_seconds",
            "Query latency in seconds",
            ["kind"],
            buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
            registry=self._registry,
        )

        self.rows_scanned_total = Counter(
            "entity_query_rows_scanned_total",
            "Total store records read by scans",
            ["entity"],
            registry=self._registry,
        )

        self.subqueries_total = Counter(
            "entity_query_subqueries_total",
            "Total number of sub-queries evaluated",
            registry=self._registry,
        )

        # Unit of work metrics
        self.entities_persisted_total = Counter(
            "entity_query_entities_persisted_total",
            "Total entities persisted",
            ["entity"],
            registry=self._registry,
        )

        self.flushes_total = Counter(
            "entity_query_flushes_total",
            "Total unit of work flushes",
            registry=self._registry,
        )

        self.lazy_loads_total = Counter(
            "entity_query_lazy_loads_total",
            "Total explicit association loads",
            ["association"],
            registry=self._registry,
        )

        self.managed_entities = Gauge(
            "entity_query_managed_entities",
            "Number of entities in the identity map",
            registry=self._registry,
        )

        self.info = Info(
            "entity_query",
            "Entity query engine information",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        """The Prometheus registry these metrics are registered with."""
        return self._registry


# Global metrics registry
_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8001, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """
    Set up Prometheus metrics server.

    Args:
        port: Port for the metrics HTTP server
        registry: Optional custom registry

    Returns:
        The metrics registry
    """
    global _metrics
    _metrics = MetricsRegistry(registry)

    from entity_query import __version__
    _metrics.info.info({
        "version": __version__,
    })

    start_http_server(port, registry=registry or REGISTRY)

    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
