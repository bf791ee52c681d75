"""
Import Relay - Metrics

The consumer talks to a MetricsRecorder; the Prometheus implementation is
the production sink. All counters are safe for concurrent use from every
worker thread.

Label cardinality: the only labelled series is import_errors_total, whose
labels are a FailureCategory value and a detail already bounded by
sanitize_detail().
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Protocol

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from import_relay.core.error_taxonomy import FailureCategory, sanitize_detail

METRIC_PREFIX = "import_relay"


class MetricsRecorder(Protocol):
    """What the import consumer reports while processing a message."""

    def message_received(self) -> None: ...

    def message_invalid(self) -> None: ...

    def import_processed(self) -> None: ...

    def import_succeeded(self) -> None: ...

    def import_already_existing(self) -> None: ...

    def failure_published(self) -> None: ...

    def failure_recorded(self, category: FailureCategory, detail: str | None) -> None: ...

    def observe_duration(self, seconds: float) -> None: ...

    def track_in_flight(self): ...


class PrometheusMetricsRecorder:
    """
    Prometheus-backed recorder.

    Pass a dedicated CollectorRegistry in tests; production uses the
    default REGISTRY so the exporter picks the series up.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else REGISTRY

        self.messages_received = Counter(
            f"{METRIC_PREFIX}_messages_received_total",
            "Import request messages received from the broker",
            registry=self.registry,
        )
        self.messages_invalid = Counter(
            f"{METRIC_PREFIX}_messages_invalid_total",
            "Import request messages that could not be decoded",
            registry=self.registry,
        )
        self.imports_processed = Counter(
            f"{METRIC_PREFIX}_imports_processed_total",
            "Import calls answered by the remote service",
            registry=self.registry,
        )
        self.imports_succeeded = Counter(
            f"{METRIC_PREFIX}_imports_succeeded_total",
            "Imports reported as IMPORTED",
            registry=self.registry,
        )
        self.imports_already_existing = Counter(
            f"{METRIC_PREFIX}_imports_already_existing_total",
            "Imports reported as ALREADY_EXISTS",
            registry=self.registry,
        )
        self.failures_published = Counter(
            f"{METRIC_PREFIX}_failures_published_total",
            "Failure envelopes handed to the failure topic producer",
            registry=self.registry,
        )
        self.import_errors = Counter(
            f"{METRIC_PREFIX}_import_errors_total",
            "Import failures by category and bounded detail",
            ["category", "detail"],
            registry=self.registry,
        )
        self.import_duration = Histogram(
            f"{METRIC_PREFIX}_import_duration_seconds",
            "End-to-end processing time of one message",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )
        self.imports_in_flight = Gauge(
            f"{METRIC_PREFIX}_imports_in_flight",
            "Messages currently being processed",
            registry=self.registry,
        )

    def message_received(self) -> None:
        self.messages_received.inc()

    def message_invalid(self) -> None:
        self.messages_invalid.inc()

    def import_processed(self) -> None:
        self.imports_processed.inc()

    def import_succeeded(self) -> None:
        self.imports_succeeded.inc()

    def import_already_existing(self) -> None:
        self.imports_already_existing.inc()

    def failure_published(self) -> None:
        self.failures_published.inc()

    def failure_recorded(self, category: FailureCategory, detail: str | None) -> None:
        self.import_errors.labels(category=category.value, detail=sanitize_detail(detail)).inc()

    def observe_duration(self, seconds: float) -> None:
        self.import_duration.observe(seconds)

    @contextmanager
    def track_in_flight(self) -> Generator[None, None, None]:
        self.imports_in_flight.inc()
        try:
            yield
        finally:
            self.imports_in_flight.dec()


def start_metrics_server(port: int, registry: CollectorRegistry | None = None) -> None:
    """Expose /metrics on the given port in a daemon thread."""
    start_http_server(port, registry=registry if registry is not None else REGISTRY)
