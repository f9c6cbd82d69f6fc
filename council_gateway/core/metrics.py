"""Prometheus metrics for provider dispatch, councils and spend."""

from prometheus_client import Counter, Histogram, Info, generate_latest

APP_INFO = Info("council_gateway", "Council gateway build info")
APP_INFO.info({"version": "0.1.0", "name": "council_gateway"})

PROVIDER_REQUESTS = Counter(
    "provider_requests_total",
    "Total provider calls",
    ["provider", "operation", "status"],
)

PROVIDER_LATENCY = Histogram(
    "provider_request_duration_seconds",
    "Provider call duration in seconds",
    ["provider", "operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 600],
)

COUNCIL_RUNS = Counter(
    "council_runs_total",
    "Total council runs",
    ["status"],
)

BUDGET_REJECTIONS = Counter(
    "budget_rejections_total",
    "Calls refused by the budget ledger",
    ["reason"],
)

SPEND_RECORDED = Counter(
    "spend_recorded_usd_total",
    "USD recorded in the daily budget ledger",
)


def metrics_text() -> bytes:
    """Render all metrics in the Prometheus exposition format."""
    return generate_latest()
