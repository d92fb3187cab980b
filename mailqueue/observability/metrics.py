"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

from mailqueue.constants import (
    METRIC_BATCH_CHUNKS,
    METRIC_EMAILS_SENT,
    METRIC_HEARTBEATS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_FINISHED,
    METRIC_STALE_SESSIONS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the newsletter worker.

    Collects metrics for:
    - Job outcomes and processing duration
    - Per-recipient send outcomes
    - Dispatched chunks
    - Session liveness (heartbeats, reclaimed stale sessions)
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Job outcomes: completed, retry, error, skipped
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of newsletter job attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Newsletter job processing duration in seconds",
            ["outcome"],
            buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
            registry=self._registry,
        )

        self.emails = Counter(
            METRIC_EMAILS_SENT,
            "Total number of emails handed to the transport by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.batch_chunks = Counter(
            METRIC_BATCH_CHUNKS,
            "Total number of batch calls by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.stale_sessions = Counter(
            METRIC_STALE_SESSIONS,
            "Total number of stale worker sessions marked as crashed",
            registry=self._registry,
        )

        self.heartbeats = Counter(
            METRIC_HEARTBEATS,
            "Total number of worker heartbeats written",
            registry=self._registry,
        )

    def record_job_finished(self, outcome: str, duration_seconds: float) -> None:
        """Record the end of a processing attempt."""
        self.jobs_finished.labels(outcome=outcome).inc()
        self.job_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_emails(self, successful: int, failed: int) -> None:
        """Record per-recipient outcomes of a chunk."""
        if successful:
            self.emails.labels(outcome="sent").inc(successful)
        if failed:
            self.emails.labels(outcome="failed").inc(failed)

    def record_chunk(self, outcome: str) -> None:
        """Record one batch call: ok, partial, rejected or exception."""
        self.batch_chunks.labels(outcome=outcome).inc()

    def record_stale_sessions(self, count: int) -> None:
        """Record sessions reclaimed by the staleness sweep."""
        self.stale_sessions.inc(count)

    def record_heartbeat(self) -> None:
        """Record a heartbeat write."""
        self.heartbeats.inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


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


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for Prometheus to scrape."""
    start_http_server(port)
