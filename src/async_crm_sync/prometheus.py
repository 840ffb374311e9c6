# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the CRM sync pipeline.

This module defines the Prometheus counters and gauges used to track error
handling and retry scheduling. All metrics use the ``crs_`` prefix
(crm-sync).

Metrics exposed:
    - ``crs_errors_total``: Counter of handled errors per category.
    - ``crs_retries_scheduled_total``: Counter of scheduled retries per category.
    - ``crs_retry_success_total``: Counter of retries that ended synced.
    - ``crs_permanent_failures_total``: Counter of terminal failures per category.
    - ``crs_pending_timers``: Gauge of armed retry timers.
    - ``crs_queued_submissions``: Gauge of submissions waiting in batch queues.

Example:
    Accessing metrics via the REST API::

        GET /metrics

    Returns Prometheus text format suitable for scraping.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SyncMetrics:
    """Prometheus metrics collector for the CRM sync pipeline.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        errors: Counter of classified errors, labelled by category.
        retries_scheduled: Counter of armed retry timers, labelled by category.
        retry_success: Counter of successful retry attempts.
        permanent_failures: Counter of exhausted submissions, labelled by category.
        pending_timers: Gauge of live retry timers.
        queued: Gauge of submissions waiting for the batch processor.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.errors = Counter(
            "crs_errors_total",
            "Total handled errors",
            ["category"],
            registry=self.registry,
        )
        self.retries_scheduled = Counter(
            "crs_retries_scheduled_total",
            "Total scheduled retries",
            ["category"],
            registry=self.registry,
        )
        self.retry_success = Counter(
            "crs_retry_success_total",
            "Total retries that synced the submission",
            registry=self.registry,
        )
        self.permanent_failures = Counter(
            "crs_permanent_failures_total",
            "Total submissions that exhausted their retries",
            ["category"],
            registry=self.registry,
        )
        self.pending_timers = Gauge(
            "crs_pending_timers",
            "Currently armed retry timers",
            registry=self.registry,
        )
        self.queued = Gauge(
            "crs_queued_submissions",
            "Submissions waiting in batch retry queues",
            registry=self.registry,
        )

    def inc_error(self, category: str) -> None:
        self.errors.labels(category=category or "unknown").inc()

    def inc_retry_scheduled(self, category: str) -> None:
        self.retries_scheduled.labels(category=category or "unknown").inc()

    def inc_retry_success(self) -> None:
        self.retry_success.inc()

    def inc_permanent_failure(self, category: str) -> None:
        self.permanent_failures.labels(category=category or "unknown").inc()

    def set_pending_timers(self, value: int) -> None:
        self.pending_timers.set(value)

    def set_queued(self, value: int) -> None:
        self.queued.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
