"""Prometheus metrics helpers for billing domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

BILLING_REQUEST_COUNT = Counter(
    "billing_request_total",
    "Number of billing API requests",
    labelnames=("endpoint", "method", "status"),
)

BILLING_REQUEST_LATENCY = Histogram(
    "billing_request_duration_seconds",
    "Latency of billing API requests",
    labelnames=("endpoint", "method"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

WEBHOOK_EVENT_COUNT = Counter(
    "billing_webhook_event_total",
    "Payment processor webhook events by type and outcome",
    labelnames=("event_type", "result"),
)

WEBHOOK_FAILURE_COUNT = Counter(
    "billing_webhook_failure_total",
    "Webhook events whose internal handling raised",
    labelnames=("event_type",),
)

USAGE_FLUSH_COUNT = Counter(
    "billing_usage_flush_total",
    "Usage meter flushes by outcome",
    labelnames=("result",),
)

USAGE_FLUSHED_ENTRIES = Counter(
    "billing_usage_flushed_entries_total",
    "Aggregated usage entries written to durable storage",
)

JOB_RUN_COUNT = Counter(
    "billing_job_run_total",
    "Scheduled billing job runs by final status",
    labelnames=("job_name", "status"),
)

JOB_RUN_LATENCY = Histogram(
    "billing_job_run_duration_seconds",
    "Duration of scheduled billing job runs",
    labelnames=("job_name",),
    buckets=(0.1, 0.5, 1, 5, 15, 60, 300),
)

PROCESSOR_CALL_COUNT = Counter(
    "billing_processor_call_total",
    "Outbound payment processor API calls",
    labelnames=("operation", "outcome"),
)

SUBSCRIPTION_TRANSITION_COUNT = Counter(
    "billing_subscription_transition_total",
    "Subscription status transitions",
    labelnames=("from_status", "to_status"),
)

PAYMENT_SUCCESS_COUNT = Counter(
    "billing_payment_success_total",
    "Count of successful payments reported by the processor",
    labelnames=("organization_id",),
)

PAYMENT_FAILURE_COUNT = Counter(
    "billing_payment_failure_total",
    "Count of failed payments reported by the processor",
    labelnames=("organization_id", "reason"),
)
