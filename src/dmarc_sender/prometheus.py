# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring report delivery.

Metrics exposed (all prefixed ``dmarc_``):
    - ``dmarc_reports_sent_total``: Successful deliveries per transport scheme.
    - ``dmarc_delivery_errors_total``: Failed delivery attempts per failure kind.
    - ``dmarc_reports_deleted_total``: Reports removed from the queue per reason.
    - ``dmarc_pending_reports``: Reports still queued after the last run.

Example:
    Writing the metrics to a node-exporter textfile after a run::

        metrics = ReportMetrics()
        ...
        Path("/var/lib/node_exporter/dmarc.prom").write_bytes(metrics.generate_latest())
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class ReportMetrics:
    """Prometheus metrics collector for the report sender.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of successful deliveries, labelled by scheme.
        errors: Counter of failed attempts, labelled by failure kind.
        deleted: Counter of deleted reports, labelled by reason.
        pending: Gauge of reports left in the queue.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "dmarc_reports_sent_total",
            "Total successful report deliveries",
            ["scheme"],
            registry=self.registry,
        )
        self.errors = Counter(
            "dmarc_delivery_errors_total",
            "Total failed delivery attempts",
            ["kind"],
            registry=self.registry,
        )
        self.deleted = Counter(
            "dmarc_reports_deleted_total",
            "Total reports removed from the queue",
            ["reason"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "dmarc_pending_reports",
            "Reports remaining in the queue",
            registry=self.registry,
        )

    def inc_sent(self, scheme: str) -> None:
        self.sent.labels(scheme=scheme or "unknown").inc()

    def inc_error(self, kind: str) -> None:
        self.errors.labels(kind=kind or "unknown").inc()

    def inc_deleted(self, reason: str) -> None:
        self.deleted.labels(reason=reason or "unknown").inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
