"""
Prometheus metrics: webhooks received and reconcile outcomes (API), notifications processed/failed (worker),
queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# API: inbound vendor webhooks (before authentication)
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Total vendor webhook deliveries received",
    ["vendor_id"],
)
reconcile_outcomes_total = Counter(
    "reconcile_outcomes_total",
    "Total reconcile calls by outcome (applied, replayed, or error code)",
    ["outcome"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total signals rejected due to invalid order lifecycle transition",
    ["current_status", "event"],
)
unknown_vendor_status_total = Counter(
    "unknown_vendor_status_total",
    "Total signals carrying a vendor status with no mapping",
    ["vendor_id"],
)
notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Total customer notifications queued for delivery",
)

# Worker: notification delivery outcomes
notifications_processed_total = Counter(
    "notifications_processed_total",
    "Total customer notifications successfully recorded",
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notifications that failed processing (retried or sent to DLQ)",
)
notifications_dlq_total = Counter(
    "notifications_dlq_total",
    "Total notifications moved to DLQ after max retries",
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
