"""
Observability and monitoring setup for the voice integrity service.
"""

import asyncio
from typing import Optional, Dict, Any, Callable
from functools import wraps

import structlog
from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
session_started_counter: Optional[metrics.Counter] = None
session_finished_counter: Optional[metrics.Counter] = None
enrollment_counter: Optional[metrics.Counter] = None
verification_counter: Optional[metrics.Counter] = None
mismatch_counter: Optional[metrics.Counter] = None
verification_score_histogram: Optional[metrics.Histogram] = None


def setup_observability(
    service_name: str = "voice-integrity-service",
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
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global session_started_counter, session_finished_counter
    global enrollment_counter, verification_counter, mismatch_counter
    global verification_score_histogram

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

    # Set up tracing
    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        otlp_span_exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
        trace_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    # Set up metrics
    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
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

    session_started_counter = meter.create_counter(
        name="call_sessions_started_total",
        description="Calls that reached the active state",
        unit="1"
    )

    session_finished_counter = meter.create_counter(
        name="call_sessions_finished_total",
        description="Calls torn down, by end reason",
        unit="1"
    )

    enrollment_counter = meter.create_counter(
        name="voice_enrollments_total",
        description="Completed voice enrollments, by profile kind",
        unit="1"
    )

    verification_counter = meter.create_counter(
        name="voice_verification_ticks_total",
        description="Verification ticks, by outcome",
        unit="1"
    )

    mismatch_counter = meter.create_counter(
        name="voice_mismatches_total",
        description="Verification ticks that did not match the enrolled voice",
        unit="1"
    )

    verification_score_histogram = meter.create_histogram(
        name="voice_verification_score",
        description="Maximum similarity score per verification tick",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        def start_span(span) -> None:
            span.set_attribute("function.name", func.__name__)
            span.set_attribute("function.module", func.__module__)

        def fail_span(span, e: Exception) -> None:
            span.record_exception(e)
            span.set_attribute("success", False)
            span.set_attribute("error.type", type(e).__name__)
            span.set_attribute("error.message", str(e))

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                start_span(span)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    fail_span(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                start_span(span)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    fail_span(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_session_started() -> None:
    if session_started_counter is not None:
        session_started_counter.add(1)


def record_session_finished(reason: str) -> None:
    if session_finished_counter is not None:
        session_finished_counter.add(1, {"reason": reason})


def record_enrollment_metrics(profile_kind: str, failed_enroll_calls: int) -> None:
    """
    Record a completed enrollment.

    Args:
        profile_kind: "backend" or "sample"
        failed_enroll_calls: Profiler calls that failed during the window
    """
    if enrollment_counter is None:
        return

    enrollment_counter.add(1, {"profile_kind": profile_kind})

    logger.info(
        "Enrollment metrics recorded",
        profile_kind=profile_kind,
        failed_enroll_calls=failed_enroll_calls
    )


def record_verification_metrics(outcome: str, max_score: Optional[float], scorer: Optional[str]) -> None:
    """
    Record one verification tick.

    Args:
        outcome: "match", "mismatch" or "skipped"
        max_score: Highest similarity of the tick, if it was scored
        scorer: Name of the scorer that produced the scores
    """
    if verification_counter is None:
        return

    verification_counter.add(1, {"outcome": outcome})

    if max_score is not None and verification_score_histogram is not None:
        verification_score_histogram.record(max_score, {"outcome": outcome, "scorer": scorer or "unknown"})


def record_mismatch(scorer: str) -> None:
    if mismatch_counter is not None:
        mismatch_counter.add(1, {"scorer": scorer})


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method
        path: Request path
        status_code: HTTP status code
        processing_time: Request processing time in seconds
    """
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
        Dict with trace ID and span ID if available
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
    """
    Middleware to add tracing context to structured logs.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        trace_context = get_trace_context()
        if trace_context:
            structlog.contextvars.bind_contextvars(**trace_context)

        await self.app(scope, receive, send)
