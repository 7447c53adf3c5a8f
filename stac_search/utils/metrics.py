"""
Metrics collection for the STAC search service.

This module records search counts, latencies and skipped items with
Prometheus collectors kept on a dedicated registry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from prometheus_client import start_http_server as start_prometheus_server

from stac_search.utils.logging import get_logger

logger = get_logger(__name__)


class MetricType(str, Enum):
    """Types of metrics that can be collected."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass
class MetricDefinition:
    """Definition of a metric to be collected."""

    name: str
    description: str
    type: MetricType
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None  # For histograms


SEARCH_METRICS = [
    MetricDefinition(
        name="searches_total",
        description="Searches executed, by backend and outcome",
        type=MetricType.COUNTER,
        labels=["backend", "outcome"],
    ),
    MetricDefinition(
        name="search_duration_seconds",
        description="Search duration in seconds",
        type=MetricType.HISTOGRAM,
        labels=["backend"],
        buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
    ),
    MetricDefinition(
        name="items_skipped_total",
        description="Stored items excluded from results because they could not be parsed",
        type=MetricType.COUNTER,
        labels=["backend"],
    ),
]


class MetricsManager:
    """
    Manager for search metrics.

    Each manager owns its registry so that several managers (one per test,
    for example) never collide on metric names.
    """

    def __init__(self, namespace: str = "stac_search", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        for definition in SEARCH_METRICS:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition) -> None:
        """
        Register a new metric for collection.

        Args:
            definition: Metric definition
        """
        name = f"{self.namespace}_{definition.name}"
        if name in self._metrics:
            logger.warning(f"Metric '{name}' already registered")
            return

        if definition.type == MetricType.COUNTER:
            metric = Counter(name, definition.description, definition.labels, registry=self.registry)
        else:
            metric = Histogram(
                name,
                definition.description,
                definition.labels,
                buckets=definition.buckets or Histogram.DEFAULT_BUCKETS,
                registry=self.registry,
            )
        self._metrics[name] = metric
        logger.debug(f"Registered metric '{name}' of type {definition.type.value}")

    def get_metric(self, name: str) -> Any:
        """
        Get a registered metric by its short name.

        Raises:
            ValueError: If the metric is not registered
        """
        full_name = f"{self.namespace}_{name}"
        if full_name not in self._metrics:
            raise ValueError(f"Metric '{full_name}' not registered")
        return self._metrics[full_name]

    def record_search(self, backend: str, outcome: str, duration: float) -> None:
        """Record one finished search."""
        self.get_metric("searches_total").labels(backend=backend, outcome=outcome).inc()
        self.get_metric("search_duration_seconds").labels(backend=backend).observe(duration)

    def record_skipped_items(self, backend: str, count: int) -> None:
        """Record stored items excluded because of data errors."""
        if count:
            self.get_metric("items_skipped_total").labels(backend=backend).inc(count)

    def sample(self, name: str, labels: Dict[str, str]) -> Optional[float]:
        """Return the current value of a sample, mostly useful in tests."""
        return self.registry.get_sample_value(f"{self.namespace}_{name}", labels)

    def export(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def start_metrics_server(self, port: int = 9090) -> None:
        """
        Start a metrics server for Prometheus scraping.

        Args:
            port: Port to listen on
        """
        start_prometheus_server(port, registry=self.registry)
        logger.info(f"Metrics server started on port {port}")


# Process-wide manager used when a backend is not given its own
metrics_manager = MetricsManager()
