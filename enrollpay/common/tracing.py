"""OpenTelemetry setup for the checkout service.

Tracing is optional: without `OTEL_EXPORTER_OTLP_ENDPOINT` the global no-op
provider stays in place and spans cost nothing.
"""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from enrollpay.common.config import CommonSettings

tracer = trace.get_tracer("enrollpay")


def setup_tracing(app_settings: CommonSettings) -> bool:
    """Register an OTLP HTTP exporting provider; False when no endpoint is set."""

    if not app_settings.otel_exporter_otlp_endpoint:
        return False
    resource = Resource.create(
        {"service.name": app_settings.service_name, "deployment.environment": app_settings.runtime_env}
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=app_settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return True


def instrument_app(app: FastAPI) -> None:
    """Request spans for every route except probes and scrapes."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def checkout_span(name: str, **attributes) -> Iterator[trace.Span]:
    """Span tagged with `checkout.*` attributes; None values are skipped."""

    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"checkout.{key}", value)
        yield span
