"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


ledger_operations_total = Counter(
    "ledger_operations_total",
    "Ledger operations by kind and outcome",
    ["service", "operation", "outcome"],
)
ledger_operation_latency_seconds = Histogram(
    "ledger_operation_latency_seconds",
    "Ledger unit-of-work latency seconds",
    ["service", "operation"],
)
credits_moved_total = Counter(
    "credits_moved_total",
    "Credits moved between accounts",
    ["service", "operation"],
)
access_grants_total = Counter(
    "access_grants_total",
    "Paid or confirmed access grants",
    ["service", "source", "pack"],
)
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Payment and verification status transitions",
    ["service", "kind", "to_status"],
)
referral_rewards_total = Counter(
    "referral_rewards_total",
    "Referral rewards credited",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
