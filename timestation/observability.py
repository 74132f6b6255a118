"""
Observability setup for the fingerprint time station.

Tracing and metrics go through OpenTelemetry. Until setup_observability() is
called every recorder here is a no-op, so services can be used (and tested)
without an exporter.
"""

import asyncio
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
capture_counter: Optional[metrics.Counter] = None
capture_duration: Optional[metrics.Histogram] = None
enrollment_counter: Optional[metrics.Counter] = None
verification_counter: Optional[metrics.Counter] = None
match_score_histogram: Optional[metrics.Histogram] = None


def setup_observability(
    service_name: str = "timestation",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to also export to the console
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global capture_counter, capture_duration
    global enrollment_counter, verification_counter, match_score_histogram

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    request_counter = meter.create_counter(
        name="http_requests_total",
        description="Total number of HTTP requests",
        unit="1"
    )

    request_duration = meter.create_histogram(
        name="http_request_duration_seconds",
        description="HTTP request duration in seconds",
        unit="s"
    )

    error_counter = meter.create_counter(
        name="http_errors_total",
        description="Total number of HTTP errors",
        unit="1"
    )

    capture_counter = meter.create_counter(
        name="fingerprint_captures_total",
        description="Fingerprint captures by outcome",
        unit="1"
    )

    capture_duration = meter.create_histogram(
        name="fingerprint_capture_duration_seconds",
        description="Time from capture request to device response",
        unit="s"
    )

    enrollment_counter = meter.create_counter(
        name="fingerprint_enrollments_total",
        description="Total number of fingerprint enrollments",
        unit="1"
    )

    verification_counter = meter.create_counter(
        name="fingerprint_verifications_total",
        description="Total number of fingerprint verifications",
        unit="1"
    )

    match_score_histogram = meter.create_histogram(
        name="fingerprint_match_score",
        description="Match scores reported by the device",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """Instrument the FastAPI application and outgoing httpx calls."""
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


def _annotate_failure(span, e: Exception) -> None:
    span.record_exception(e)
    span.set_attribute("success", False)
    span.set_attribute("error.type", type(e).__name__)
    span.set_attribute("error.message", str(e))
    code = getattr(e, "code", None)
    if code:
        span.set_attribute("error.code", code)


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    _annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_capture_metrics(outcome: str, processing_time: float) -> None:
    """
    Record one device capture.

    Args:
        outcome: "success" or the error code of the failure
        processing_time: Seconds spent waiting for the device
    """
    if capture_counter is None or capture_duration is None:
        return

    attributes = {"outcome": outcome}
    capture_counter.add(1, attributes)
    capture_duration.record(processing_time, attributes)


def record_enrollment_metrics(
    success: bool,
    processing_time: float,
    subject_id: str,
    outcome: Optional[str] = None
) -> None:
    """
    Record metrics for a finished enrollment (merge and persist).

    Args:
        success: Whether the template was stored
        processing_time: Time taken in seconds
        subject_id: Subject for attribution
        outcome: Final step or error code
    """
    if enrollment_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "enrollment",
        "success": str(success).lower(),
        "outcome": outcome or ("succeeded" if success else "failed")
    }

    enrollment_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    logger.info(
        "Enrollment metrics recorded",
        success=success,
        processing_time=processing_time,
        subject_id=subject_id,
        outcome=outcome
    )


def record_verification_metrics(
    success: bool,
    processing_time: float,
    score: Optional[float],
    subject_id: str,
    action: str,
    outcome: Optional[str] = None
) -> None:
    """
    Record metrics for a verification attempt.

    Args:
        success: Whether the attempt was verified and committed
        processing_time: Time taken in seconds
        score: Match score reported by the device (if any)
        subject_id: Subject for attribution
        action: clock_in, clock_out or authorize_leave
        outcome: Final step or error code
    """
    if verification_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "verification",
        "success": str(success).lower(),
        "action": action,
        "outcome": outcome or ("succeeded" if success else "failed")
    }

    verification_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if score is not None and match_score_histogram is not None:
        match_score_histogram.record(score, {"action": action, "success": str(success).lower()})

    logger.info(
        "Verification metrics recorded",
        success=success,
        processing_time=processing_time,
        score=score,
        subject_id=subject_id,
        action=action,
        outcome=outcome
    )


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """Record HTTP request metrics."""
    if request_counter is None or request_duration is None or error_counter is None:
        return

    attributes = {
        "method": method,
        "path": path,
        "status_code": str(status_code)
    }

    request_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if status_code >= 400:
        error_counter.add(1, {
            **attributes,
            "error_type": "client_error" if status_code < 500 else "server_error"
        })


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if a span is recording
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
        "trace_flags": int(span_context.trace_flags)
    }


class TracingContextMiddleware:
    """ASGI middleware binding the current trace context into structured logs."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        trace_context = get_trace_context()
        if trace_context:
            structlog.contextvars.bind_contextvars(**trace_context)

        await self.app(scope, receive, send)
