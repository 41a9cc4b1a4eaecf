"""OpenTelemetry initialization and span wrappers for provider calls."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calbridge"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "calbridge") -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the service.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, configures a real
    TracerProvider with an OTLP gRPC exporter on the first call.  Without it
    a no-op tracer is returned.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


class provider_span:
    """Create a span around one calendar-provider operation.

    Usable as a context manager or as a decorator on async functions::

        with provider_span("list_events", provider="google", calendar_id="primary"):
            ...

        @provider_span("list_calendars", provider="google")
        async def list_calendars(...): ...

    The span is named ``calbridge.provider.<operation>``.  Exceptions are
    recorded on the span and its status set to ERROR before re-raising.
    """

    def __init__(self, operation: str, *, provider: str, calendar_id: str | None = None) -> None:
        self._operation = operation
        self._provider = provider
        self._calendar_id = calendar_id
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(f"calbridge.provider.{self._operation}")
        self._span.set_attribute("calbridge.provider", self._provider)
        self._span.set_attribute("calbridge.operation", self._operation)
        if self._calendar_id is not None:
            self._span.set_attribute("calbridge.calendar_id", self._calendar_id)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, type(exc_val).__name__)
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets its own span state; concurrent calls must not
        # share self._span / self._token.
        operation = self._operation
        provider = self._provider
        calendar_id = self._calendar_id

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with provider_span(operation, provider=provider, calendar_id=calendar_id):
                return await func(*args, **kwargs)

        return _wrapper
