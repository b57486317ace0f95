"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.constants import (
    METRIC_DELIVERIES_ACQUIRED,
    METRIC_DELIVERIES_FINALIZED,
    METRIC_DELIVERIES_IN_FLIGHT,
    METRIC_HANDLER_DURATION,
    METRIC_LEASE_EXPIRED,
    METRIC_PUBLISH_FAILURES,
    METRIC_QUEUE_DEPTH,
    METRIC_TASKS_PUBLISHED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for task dispatch.

    Collects metrics for:
    - Queue depth
    - Publishes and publish failures
    - Delivery acquisition and finalization
    - Handler execution duration
    - Expired leases
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of ready messages in the queue",
            ["queue"],
            registry=self._registry,
        )

        self.tasks_published = Counter(
            METRIC_TASKS_PUBLISHED,
            "Total number of tasks durably published",
            ["queue"],
            registry=self._registry,
        )

        self.publish_failures = Counter(
            METRIC_PUBLISH_FAILURES,
            "Total number of publishes rejected by the broker",
            ["queue"],
            registry=self._registry,
        )

        self.deliveries_acquired = Counter(
            METRIC_DELIVERIES_ACQUIRED,
            "Total number of deliveries opened by consumers",
            ["queue"],
            registry=self._registry,
        )

        self.deliveries_finalized = Counter(
            METRIC_DELIVERIES_FINALIZED,
            "Total number of deliveries finalized, by disposition",
            ["queue", "disposition"],
            registry=self._registry,
        )

        self.deliveries_in_flight = Gauge(
            METRIC_DELIVERIES_IN_FLIGHT,
            "Deliveries currently held unacknowledged",
            ["queue"],
            registry=self._registry,
        )

        self.handler_duration = Histogram(
            METRIC_HANDLER_DURATION,
            "Task handler duration in seconds",
            ["queue", "disposition"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of deliveries recovered after lease expiry",
            ["queue"],
            registry=self._registry,
        )

    def record_task_published(self, queue: str) -> None:
        """Record a durable publish."""
        self.tasks_published.labels(queue=queue).inc()

    def record_publish_failure(self, queue: str) -> None:
        """Record a rejected publish."""
        self.publish_failures.labels(queue=queue).inc()

    def record_deliveries_acquired(self, queue: str, count: int = 1) -> None:
        """Record opened deliveries."""
        self.deliveries_acquired.labels(queue=queue).inc(count)

    def record_delivery_finalized(
        self,
        queue: str,
        disposition: str,
        duration_seconds: float,
    ) -> None:
        """Record a finalized delivery."""
        self.deliveries_finalized.labels(queue=queue, disposition=disposition).inc()
        self.handler_duration.labels(queue=queue, disposition=disposition).observe(
            duration_seconds
        )

    def set_in_flight(self, queue: str, count: int) -> None:
        """Update the number of open deliveries for a queue."""
        self.deliveries_in_flight.labels(queue=queue).set(count)

    def record_lease_expired(self, count: int, queue: str = "all") -> None:
        """Record deliveries recovered from expired leases."""
        self.lease_expired.labels(queue=queue).inc(count)

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update ready-message depth for a queue."""
        self.queue_depth.labels(queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
