"""Prometheus metric definitions for the order service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


orders_created_total = Counter("orders_created_total", "Total orders placed", ["service", "payment_method"])
order_transitions_total = Counter(
    "order_transitions_total",
    "Status ledger transitions written",
    ["service", "status", "actor"],
)
status_conflicts_total = Counter(
    "status_conflicts_total",
    "Optimistic concurrency conflicts on the current-status pointer",
    ["service"],
)
payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Orders moved to paid",
    ["service", "source"],
)
payment_failures_total = Counter(
    "payment_failures_total",
    "Orders moved to a failed payment status",
    ["service", "gateway", "reason"],
)
duplicate_reports_skipped_total = Counter(
    "duplicate_reports_skipped_total",
    "Gateway reports skipped because they carried no new fact",
    ["service", "gateway"],
)
terminal_reports_ignored_total = Counter(
    "terminal_reports_ignored_total",
    "Gateway reports not applied because the order is delivered or closed",
    ["service", "gateway", "outcome"],
)
webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Gateway callbacks rejected before reconciliation",
    ["service", "gateway", "reason"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound payment gateway calls",
    ["service", "gateway", "operation", "result"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment gateway call latency seconds",
    ["service", "gateway", "operation"],
)
notification_failures_total = Counter(
    "notification_failures_total",
    "Notification channel calls that failed and were swallowed",
    ["service", "channel"],
)
sweep_runs_total = Counter("sweep_runs_total", "Scheduled sweep executions", ["service", "sweep"])
sweep_order_failures_total = Counter(
    "sweep_order_failures_total",
    "Per-order failures inside a sweep",
    ["service", "sweep"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
