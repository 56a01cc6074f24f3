"""
Metrics Collection with Prometheus.

Exposes pipeline and system metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from entitlement_relay.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    CHANNEL = "channel"
    EVENT_KIND = "event_kind"
    ERROR_TYPE = "error_type"


class RelayMetrics:
    """
    Centralized metrics for the Entitlement Relay.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Notifications (outcome, verification failures, pipeline duration)
    - Ledger (mutations, conflicts)
    - Fan-out (per channel deliveries, change-log appends, live sessions)
    - CRM sync queue (job outcomes)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "relay_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "relay_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "relay_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "relay_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Notification Metrics
        # ====================================================================
        self.notifications_total = Counter(
            "relay_notifications_total",
            "Inbound notifications by outcome",
            [MetricLabels.OUTCOME],
        )

        self.notification_rejections_total = Counter(
            "relay_notification_rejections_total",
            "Rejected notifications by error code",
            [MetricLabels.ERROR_TYPE],
        )

        self.notification_duration_seconds = Histogram(
            "relay_notification_duration_seconds",
            "Time from receipt to change-log append",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_mutations_total = Counter(
            "relay_ledger_mutations_total",
            "Entitlement records written",
            [MetricLabels.EVENT_KIND],
        )

        self.ledger_conflicts_total = Counter(
            "relay_ledger_conflicts_total",
            "Optimistic version conflicts retried by the ledger",
        )

        # ====================================================================
        # Fan-out Metrics
        # ====================================================================
        self.fanout_deliveries_total = Counter(
            "relay_fanout_deliveries_total",
            "Fan-out delivery attempts by channel and outcome",
            [MetricLabels.CHANNEL, MetricLabels.OUTCOME],
        )

        self.change_log_appends_total = Counter(
            "relay_change_log_appends_total",
            "Change-log entries appended",
            ["change_type"],
        )

        self.live_sessions = Gauge(
            "relay_live_sessions",
            "Registered live socket sessions",
        )

        # ====================================================================
        # CRM Sync Metrics
        # ====================================================================
        self.crm_jobs_total = Counter(
            "relay_crm_jobs_total",
            "CRM sync job attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "relay_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_notification(self, outcome: str, duration: float | None = None) -> None:
        """Record a notification outcome (processed, duplicate, ignored, rejected)."""
        self.notifications_total.labels(outcome=outcome).inc()
        if duration is not None:
            self.notification_duration_seconds.observe(duration)

    def record_rejection(self, error_code: str) -> None:
        """Record a rejected notification."""
        self.notification_rejections_total.labels(error_type=error_code).inc()
        self.notifications_total.labels(outcome="rejected").inc()

    def record_delivery(self, channel: str, outcome: str) -> None:
        """Record a fan-out delivery attempt."""
        self.fanout_deliveries_total.labels(channel=channel, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = RelayMetrics()
