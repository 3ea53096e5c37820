"""Request id, security headers and request metrics for every HTTP call."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request

from enrollpay.common.config import settings
from enrollpay.common.metrics import http_request_duration_seconds, http_requests_total
from enrollpay.common.logging import request_id_ctx

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
}
HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def is_https_request(request: Request) -> bool:
    proto = request.headers.get("x-forwarded-proto", "").lower()
    return "https" in proto or request.url.scheme == "https"


def client_ip(request: Request) -> str:
    """First forwarded hop, then `X-Real-IP`, then the socket peer."""

    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def install_http_middleware(app: FastAPI) -> None:
    """Attach request-id/security-header/metrics middleware to `app`."""

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id", "").strip() or str(uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            response.headers["X-Request-Id"] = request_id
            for name, value in SECURITY_HEADERS.items():
                response.headers[name] = value
            if is_https_request(request):
                response.headers["Strict-Transport-Security"] = HSTS_VALUE
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()
            request_id_ctx.reset(token)
