"""
Prometheus metrics collection.

In-memory counters bound to a per-application registry; Prometheus scrapes
them from /metrics.
"""

import time
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

from .. import __version__

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for EventSink.

    Keep metrics simple,
    use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # Service info
        self.service_info = Info(
            "eventsink_service",
            "EventSink service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": __version__,
            "service": "eventsink",
        })

        # Admission
        self.requests_rate_limited_total = Counter(
            "eventsink_requests_rate_limited_total",
            "Requests rejected by the per-client rate limiter",
            registry=self.registry,
        )

        # Ingestion
        self.events_received_total = Counter(
            "eventsink_events_received_total",
            "Events received in ingestion requests",
            registry=self.registry,
        )

        self.events_accepted_total = Counter(
            "eventsink_events_accepted_total",
            "Events that passed validation and were queued",
            registry=self.registry,
        )

        self.events_rejected_total = Counter(
            "eventsink_events_rejected_total",
            "Events dropped by validation",
            ["reason"],
            registry=self.registry,
        )

        self.batch_size_events = Histogram(
            "eventsink_batch_size_events",
            "Number of accepted events per queued batch",
            buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
            registry=self.registry,
        )

        # Queue
        self.queue_depth = Gauge(
            "eventsink_queue_depth_batches",
            "Batches currently buffered in the ingestion queue",
            registry=self.registry,
        )

        self.enqueue_failures_total = Counter(
            "eventsink_enqueue_failures_total",
            "Batches that could not be queued",
            ["reason"],
            registry=self.registry,
        )

        # Persistence
        self.batches_persisted_total = Counter(
            "eventsink_batches_persisted_total",
            "Batches committed to storage",
            registry=self.registry,
        )

        self.batches_failed_total = Counter(
            "eventsink_batches_failed_total",
            "Batches abandoned after every persistence attempt failed",
            registry=self.registry,
        )

        self.batch_retries_total = Counter(
            "eventsink_batch_retries_total",
            "Persistence retry attempts",
            registry=self.registry,
        )

        self.rows_inserted_total = Counter(
            "eventsink_rows_inserted_total",
            "Rows inserted (duplicates excluded)",
            registry=self.registry,
        )

        self.rows_duplicate_total = Counter(
            "eventsink_rows_duplicate_total",
            "Rows skipped because the event id already existed",
            registry=self.registry,
        )

        self.persist_duration = Histogram(
            "eventsink_persist_duration_seconds",
            "Time to persist one batch",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "eventsink_uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        # Track start time for uptime calculation
        self._start_time = time.time()

    def record_rate_limited(self) -> None:
        self.requests_rate_limited_total.inc()

    def record_ingestion(self, received_count: int, accepted_count: int) -> None:
        """Record the outcome of sanitizing one request's events."""
        self.events_received_total.inc(received_count)
        self.events_accepted_total.inc(accepted_count)

        if accepted_count > 0:
            self.batch_size_events.observe(accepted_count)

    def record_rejected(self, reason: str, count: int = 1) -> None:
        self.events_rejected_total.labels(reason=reason).inc(count)

    def record_enqueue_failure(self, reason: str) -> None:
        self.enqueue_failures_total.labels(reason=reason).inc()

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def record_batch_persisted(self, rows_inserted: int, batch_size: int, duration_seconds: float) -> None:
        """Record a committed batch."""
        self.batches_persisted_total.inc()
        self.rows_inserted_total.inc(rows_inserted)
        if batch_size > rows_inserted:
            self.rows_duplicate_total.inc(batch_size - rows_inserted)
        self.persist_duration.observe(duration_seconds)

    def record_batch_failed(self) -> None:
        self.batches_failed_total.inc()

    def record_batch_retry(self) -> None:
        self.batch_retries_total.inc()

    def update_system_metrics(self) -> None:
        """Update system-level metrics."""
        self.uptime_seconds.set(time.time() - self._start_time)
