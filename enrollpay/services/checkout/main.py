"""HTTP surface for enrollment card checkout."""

from typing import Any

from fastapi import Body, Depends, FastAPI, Request, Response

from enrollpay.common.config import settings
from enrollpay.common.db import SessionLocal
from enrollpay.common.errors import install_error_handlers
from enrollpay.common.http import install_http_middleware
from enrollpay.common.logging import configure_logging
from enrollpay.common.metrics import checkout_latency_seconds, checkout_requests_total, metrics_response
from enrollpay.common.rate_limit import RateLimiter, RateLimitOptions
from enrollpay.common.startup import log_startup_config
from enrollpay.common.tracing import instrument_app, setup_tracing
from enrollpay.services.checkout.schemas import CheckoutIntent, CheckoutResponse
from enrollpay.services.checkout.service import CheckoutOrchestrator

configure_logging()
setup_tracing(settings)
log_startup_config(
    settings,
    [
        "database_dsn",
        "redis_url",
        "runtime_env",
        "payment_provider_mode",
        "rede_pv",
        "rede_env",
        "rede_timeout_ms",
        "idempotency_schema_auto_repair",
    ],
)
orchestrator = CheckoutOrchestrator(SessionLocal)
rate_limiter = RateLimiter.from_settings()
checkout_rate_limit = RateLimitOptions(
    key_prefix="payments",
    window_ms=settings.checkout_rate_limit_window_ms,
    max=settings.checkout_rate_limit_max,
)

app = FastAPI(title="Enrollment Checkout")
install_http_middleware(app)
install_error_handlers(app)
instrument_app(app)


def get_orchestrator() -> CheckoutOrchestrator:
    return orchestrator


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def enforce_checkout_rate_limit(
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    limiter.enforce(request, response, checkout_rate_limit)


@app.post(
    "/api/payments",
    response_model=CheckoutResponse,
    dependencies=[Depends(enforce_checkout_rate_limit)],
)
def create_checkout(
    request: Request,
    response: Response,
    body: dict[str, Any] | None = Body(default=None),
    checkout: CheckoutOrchestrator = Depends(get_orchestrator),
):
    """Charge the lead's course price once per idempotency key.

    Runs in the worker threadpool, so an accepted request keeps going to
    settlement even if the client disconnects mid-charge.
    """

    checkout_requests_total.labels(service=settings.service_name).inc()
    response.headers["Cache-Control"] = "no-store"
    intent = CheckoutIntent.from_request(body, request.headers)
    with checkout_latency_seconds.labels(service=settings.service_name).time():
        outcome = checkout.checkout(intent)
    response.status_code = outcome.status_code
    response.headers["Idempotency-Key"] = outcome.idempotency_key
    return outcome.body


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
