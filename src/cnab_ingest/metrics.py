"""
Metrics port for the upload pipeline.

Components receive a ``PipelineMetrics`` instead of touching a process-wide
registry. ``PrometheusMetrics`` binds the port to a prometheus_client
registry (a private one in tests); ``NoOpMetrics`` is the default.
"""

from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from cnab_ingest.types import LineOutcome

UPLOAD_DURATION_BUCKETS = (0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600)


class PipelineMetrics(Protocol):
    def record_line(self, outcome: LineOutcome) -> None: ...

    def record_line_retry(self) -> None: ...

    def record_upload(self, status: str) -> None: ...

    def observe_upload_duration(self, seconds: float) -> None: ...

    def record_checkpoint(self, saved: bool) -> None: ...

    def record_enqueued(self) -> None: ...

    def record_dead_letter(self) -> None: ...

    def set_queue_depth(self, pending: int) -> None: ...


class NoOpMetrics:
    """Metrics sink that records nothing."""

    def record_line(self, outcome: LineOutcome) -> None:
        pass

    def record_line_retry(self) -> None:
        pass

    def record_upload(self, status: str) -> None:
        pass

    def observe_upload_duration(self, seconds: float) -> None:
        pass

    def record_checkpoint(self, saved: bool) -> None:
        pass

    def record_enqueued(self) -> None:
        pass

    def record_dead_letter(self) -> None:
        pass

    def set_queue_depth(self, pending: int) -> None:
        pass


class PrometheusMetrics:
    """prometheus_client implementation of the metrics port."""

    def __init__(self, registry: CollectorRegistry | None = None, namespace: str = "cnab"):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.lines = Counter(
            "lines_processed_total",
            "CNAB lines processed, by outcome",
            labelnames=["outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self.line_retries = Counter(
            "line_retries_total",
            "Line persistence attempts that were retried",
            namespace=namespace,
            registry=self.registry,
        )
        self.uploads = Counter(
            "uploads_total",
            "Uploads finished, by final status",
            labelnames=["status"],
            namespace=namespace,
            registry=self.registry,
        )
        self.upload_duration = Histogram(
            "upload_processing_seconds",
            "Wall time spent processing one upload",
            buckets=UPLOAD_DURATION_BUCKETS,
            namespace=namespace,
            registry=self.registry,
        )
        self.checkpoints = Counter(
            "checkpoints_total",
            "Checkpoint save attempts, by result",
            labelnames=["result"],
            namespace=namespace,
            registry=self.registry,
        )
        self.enqueued = Counter(
            "queue_enqueued_total",
            "Uploads handed to the queue",
            namespace=namespace,
            registry=self.registry,
        )
        self.dead_letters = Counter(
            "queue_dead_letters_total",
            "Messages moved to the dead-letter stream",
            namespace=namespace,
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "queue_pending_messages",
            "Messages waiting in the upload queue",
            namespace=namespace,
            registry=self.registry,
        )

    def record_line(self, outcome: LineOutcome) -> None:
        self.lines.labels(outcome=outcome.value).inc()

    def record_line_retry(self) -> None:
        self.line_retries.inc()

    def record_upload(self, status: str) -> None:
        self.uploads.labels(status=status).inc()

    def observe_upload_duration(self, seconds: float) -> None:
        self.upload_duration.observe(seconds)

    def record_checkpoint(self, saved: bool) -> None:
        self.checkpoints.labels(result="saved" if saved else "failed").inc()

    def record_enqueued(self) -> None:
        self.enqueued.inc()

    def record_dead_letter(self) -> None:
        self.dead_letters.inc()

    def set_queue_depth(self, pending: int) -> None:
        self.queue_depth.set(pending)
