"""
Distributed Tracing with OpenTelemetry.

Spans cover the webhook request (FastAPI instrumentation), each SQL
statement (SQLAlchemy instrumentation) and the pipeline stages in between
(``trace_operation``). A rejected notification is an expected outcome: its
span is tagged with the rejection code instead of being marked as an error.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from entitlement_relay.config import settings
from entitlement_relay.exceptions import NotificationRejectedError

TRACER_NAME = "entitlement_relay.pipeline"

# Health checks and scrapes would otherwise dominate the trace volume
EXCLUDED_URLS = "health,metrics"


def setup_tracing() -> None:
    """Install the global tracer provider exporting over OTLP gRPC."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.environment": settings.deployment_environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.trace_sample_rate)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Instrument a FastAPI app. Call once per app instance."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument an async engine through its sync core."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _set_attributes(span: Span, attributes: dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(f"relay.{key}", value)
        else:
            span.set_attribute(f"relay.{key}", str(value))


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a child span of the current request.

    Usage:
        with trace_operation("ledger_apply", user_id=user_id) as span:
            delta = await ledger.apply(user_id, event, transaction)
            span.set_attribute("relay.changed", delta.change_type is not None)
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        operation_name, record_exception=False, set_status_on_exception=False
    ) as span:
        _set_attributes(span, attributes)
        try:
            yield span
        except NotificationRejectedError as exc:
            span.set_attribute("relay.rejection", exc.code)
            raise
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
