"""
Prometheus metrics for certificate sync operations.

Metrics live on an injectable CollectorRegistry so tests (and multiple
controllers in one process) don't collide on the global default registry.
"""

import logging
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

SYNC_DURATION_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]


class SyncMetrics:
    """Counters, histogram and gauge describing destination syncs."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        self.sync_total = Counter(
            "certsync_sync_total",
            "Total number of sync operations",
            ["destination_type", "status"],
            registry=self.registry,
        )
        self.sync_duration = Histogram(
            "certsync_sync_duration_seconds",
            "Duration of sync operations",
            ["destination_type"],
            buckets=SYNC_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.certificate_expiry = Gauge(
            "certsync_certificate_expiry_seconds",
            "Timestamp of certificate expiry in seconds",
            ["namespace", "name", "destination"],
            registry=self.registry,
        )
        self.validation_failed_total = Counter(
            "certsync_validation_failed_total",
            "Total number of certificate validation failures",
            ["namespace", "name", "reason"],
            registry=self.registry,
        )

    def record_sync(
        self, destination_type: str, success: bool, duration: Optional[float] = None
    ) -> None:
        """Count a sync attempt and, on success, observe its latency."""
        status = "success" if success else "error"
        self.sync_total.labels(destination_type=destination_type, status=status).inc()
        if success and duration is not None:
            self.sync_duration.labels(destination_type=destination_type).observe(
                duration
            )

    def record_expiry(
        self, namespace: str, name: str, destination: str, expiry_timestamp: float
    ) -> None:
        self.certificate_expiry.labels(
            namespace=namespace, name=name, destination=destination
        ).set(expiry_timestamp)

    def record_validation_failure(self, namespace: str, name: str, reason: str) -> None:
        self.validation_failed_total.labels(
            namespace=namespace, name=name, reason=reason
        ).inc()

    def render(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST
