"""
Prometheus metrics for webhook reconciliation and marketplace sync.

Tracks:
- Webhook deliveries by endpoint, event type and outcome
- Payment and order state transitions
- Loyalty points credited
- Sync runs, per-record outcomes and durations
- Adapter errors by channel and classification
- Sync run lock contention
- Notification outbox depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["endpoint", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["endpoint", "event_type", "status"],  # processed, duplicate, ignored, unhandled
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for a missing or invalid signature",
    ["endpoint"],
)

# State machine metrics
state_transitions_total = Counter(
    "state_transitions_total",
    "Order and payment state transitions applied",
    ["entity", "status"],
)

loyalty_points_credited_total = Counter(
    "loyalty_points_credited_total",
    "Loyalty points credited from paid orders",
)

reconciliation_conflicts_total = Counter(
    "reconciliation_conflicts_total",
    "Canonical/external disagreements resolved in favour of canonical data",
    ["entity", "field"],
)

# Sync metrics
sync_runs_total = Counter(
    "sync_runs_total",
    "Total marketplace sync runs",
    ["channel", "operation", "status"],
)

sync_records_total = Counter(
    "sync_records_total",
    "Records handled by marketplace sync runs",
    ["channel", "operation", "outcome"],  # processed, failed, skipped
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Marketplace sync run duration in seconds",
    ["channel", "operation"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800),
)

sync_last_success_timestamp = Gauge(
    "sync_last_success_timestamp",
    "Timestamp of the last successful sync run",
    ["channel", "operation"],
)

adapter_errors_total = Counter(
    "adapter_errors_total",
    "Channel adapter errors",
    ["channel", "error_type"],  # transient, rate_limit, permanent
)

adapter_requests_total = Counter(
    "adapter_requests_total",
    "Channel adapter calls",
    ["channel", "operation", "status"],
)

# Lock metrics
sync_lock_acquisitions_total = Counter(
    "sync_lock_acquisitions_total",
    "Sync run lock acquisition attempts",
    ["status"],  # acquired, busy
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished notification events in the outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox event dispatch duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(
        endpoint: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(endpoint=endpoint, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            endpoint=endpoint, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(endpoint=endpoint).observe(duration_seconds)

    @staticmethod
    def record_signature_failure(endpoint: str) -> None:
        webhook_signature_failures_total.labels(endpoint=endpoint).inc()

    @staticmethod
    def record_transition(entity: str, status: str) -> None:
        """Record an applied order or payment transition."""
        state_transitions_total.labels(entity=entity, status=status).inc()

    @staticmethod
    def record_loyalty_credit(points: int) -> None:
        loyalty_points_credited_total.inc(points)

    @staticmethod
    def record_conflict(entity: str, field: str) -> None:
        reconciliation_conflicts_total.labels(entity=entity, field=field).inc()

    @staticmethod
    def record_sync_run(
        channel: str,
        operation: str,
        status: str,
        processed: int,
        failed: int,
        skipped: int,
        duration_seconds: float,
    ) -> None:
        """Record a finished sync run with its per-record outcomes."""
        sync_runs_total.labels(channel=channel, operation=operation, status=status).inc()
        sync_records_total.labels(
            channel=channel, operation=operation, outcome="processed"
        ).inc(processed)
        sync_records_total.labels(channel=channel, operation=operation, outcome="failed").inc(
            failed
        )
        sync_records_total.labels(channel=channel, operation=operation, outcome="skipped").inc(
            skipped
        )
        sync_run_duration_seconds.labels(channel=channel, operation=operation).observe(
            duration_seconds
        )
        if status in ("succeeded", "partial"):
            sync_last_success_timestamp.labels(channel=channel, operation=operation).set(
                time.time()
            )

    @staticmethod
    def record_adapter_call(channel: str, operation: str, status: str) -> None:
        adapter_requests_total.labels(channel=channel, operation=operation, status=status).inc()

    @staticmethod
    def record_adapter_error(channel: str, error_type: str) -> None:
        """Record a classified adapter error."""
        adapter_errors_total.labels(channel=channel, error_type=error_type).inc()

    @staticmethod
    def record_sync_lock(status: str) -> None:
        """Record sync run lock acquisition."""
        sync_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
