"""Infrastructure layer - cross-cutting concerns."""

from entity_query.infrastructure.config import Config, get_config
from entity_query.infrastructure.logging import setup_logging, get_logger
from entity_query.infrastructure.metrics import setup_metrics, get_metrics, MetricsRegistry
from entity_query.infrastructure.tracing import setup_tracing, get_tracer, trace_span

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "setup_metrics",
    "get_metrics",
    "MetricsRegistry",
    "setup_tracing",
    "get_tracer",
    "trace_span",
]
