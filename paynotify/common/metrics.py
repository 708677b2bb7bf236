"""Prometheus metric definitions shared by the API and worker processes."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment admission requests", ["service"])
payment_created_total = Counter("payment_created_total", "Payments persisted by admission", ["service"])
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Admissions answered from the idempotency cache",
    ["service"],
)
lock_timeouts_total = Counter("lock_timeouts_total", "Lock acquisitions that ran out of wait time", ["service"])
payment_latency_seconds = Histogram("payment_latency_seconds", "Payment admission latency seconds", ["service"])
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
    "Event queue delay seconds between event timestamp and consume time",
    ["service", "topic"],
)
notifications_sent_total = Counter("notifications_sent_total", "Notifications delivered", ["service"])
notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that exhausted retries",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_published_total = Counter(
    "dlq_published_total",
    "Total messages routed to a dead-letter topic",
    ["service", "topic", "error_type"],
)
dlq_replayed_total = Counter(
    "dlq_replayed_total",
    "Dead-letter messages republished to the main topic",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
