"""Delivery metrics for Prometheus monitoring."""
from prometheus_client import Counter, Histogram

# Enqueue metrics
webhook_deliveries_queued_total = Counter(
    "webhook_deliveries_queued_total",
    "Delivery rows created by fan-out",
    labelnames=["event_type"],
)

webhook_deliveries_deduplicated_total = Counter(
    "webhook_deliveries_deduplicated_total",
    "Enqueue attempts skipped because the delivery already existed",
    labelnames=["event_type"],
)

# Delivery metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Delivery attempts by outcome",
    labelnames=["outcome"],  # completed, retry_scheduled, exhausted, circuit_open, rejected
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Duration of outbound webhook HTTP requests",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Queue metrics
webhook_deliveries_claimed_total = Counter(
    "webhook_deliveries_claimed_total",
    "Delivery rows claimed by queue drains",
)

webhook_deliveries_reclaimed_total = Counter(
    "webhook_deliveries_reclaimed_total",
    "Delivery rows returned to the queue after a stuck claim",
)
