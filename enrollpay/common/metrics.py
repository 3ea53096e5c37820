"""Prometheus metric definitions for the checkout service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


checkout_requests_total = Counter("checkout_requests_total", "Total checkout requests", ["service"])
checkout_outcomes_total = Counter(
    "checkout_outcomes_total",
    "Checkout outcomes by resulting status",
    ["service", "status"],
)
checkout_replays_total = Counter(
    "checkout_replays_total",
    "Checkout requests answered from an existing record without a gateway call",
    ["service", "lookup"],
)
checkout_latency_seconds = Histogram("checkout_latency_seconds", "Checkout latency seconds", ["service"])
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment provider call duration seconds",
    ["service", "mode"],
)
gateway_failures_total = Counter(
    "gateway_failures_total",
    "Payment provider calls that raised instead of answering",
    ["service", "mode"],
)
schema_repair_attempts_total = Counter(
    "schema_repair_attempts_total",
    "Idempotency schema self-repair attempts",
    ["service", "result"],
)
rate_limit_fallbacks_total = Counter(
    "rate_limit_fallbacks_total",
    "Rate-limit decisions served by the in-process store after a shared store failure",
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
