"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .config import settings

SERVICE_NAME = "tourbook-api"
SERVICE_VERSION = "1.0.0"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Business metrics
BOOKINGS_CREATED = Counter(
    'bookings_created_total',
    'Bookings created, split by whether an active booking was reused',
    ['outcome'],
    registry=REGISTRY
)

BOOKINGS_CANCELLED = Counter(
    'bookings_cancelled_total',
    'Total bookings cancelled',
    ['actor'],
    registry=REGISTRY
)

PAYMENT_INTENTS = Counter(
    'payment_intents_total',
    'Payment intent operations by action (created, reused, replaced)',
    ['action'],
    registry=REGISTRY
)

PAYMENT_CONFIRMATIONS = Counter(
    'payment_confirmations_total',
    'Payments moved to COMPLETED, by trigger',
    ['source'],
    registry=REGISTRY
)

PAYMENT_FAILURES = Counter(
    'payment_failures_total',
    'Payments moved to FAILED',
    ['source'],
    registry=REGISTRY
)

WEBHOOK_EVENTS = Counter(
    'payment_webhook_events_total',
    'Processor webhook deliveries by event type and outcome',
    ['event_type', 'outcome'],
    registry=REGISTRY
)

RECONCILIATION_FAILURES = Counter(
    'payment_reconciliation_failures_total',
    'Processor successes that could not be written locally',
    ['source'],
    registry=REGISTRY
)

CAPACITY_UTILIZATION = Gauge(
    'departure_capacity_utilization',
    'Capacity utilization percentage',
    ['departure_id'],
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    provider = TracerProvider(resource=_resource())

    if settings.otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )

    trace.set_tracer_provider(provider)
    return trace.get_tracer(__name__)


def setup_metrics():
    """Setup OpenTelemetry metrics export when a collector is configured."""
    if settings.otlp_endpoint:
        reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=settings.otlp_endpoint),
            export_interval_millis=60000,
        )
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine):
    """Instrument the async engine's underlying sync engine with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_booking_created(reused: bool):
        BOOKINGS_CREATED.labels(outcome="reused" if reused else "created").inc()

    @staticmethod
    def record_booking_cancelled(actor: str):
        BOOKINGS_CANCELLED.labels(actor=actor).inc()

    @staticmethod
    def record_payment_intent(action: str):
        PAYMENT_INTENTS.labels(action=action).inc()

    @staticmethod
    def record_payment_confirmed(source: str):
        PAYMENT_CONFIRMATIONS.labels(source=source).inc()

    @staticmethod
    def record_payment_failed(source: str):
        PAYMENT_FAILURES.labels(source=source).inc()

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str):
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_reconciliation_failure(source: str):
        RECONCILIATION_FAILURES.labels(source=source).inc()

    @staticmethod
    def set_capacity_utilization(departure_id: str, utilization: float):
        """Set capacity utilization percentage for a departure."""
        CAPACITY_UTILIZATION.labels(departure_id=departure_id).set(utilization)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()


def get_logger(name: str):
    """Get a structlog logger bound to the module name."""
    return structlog.get_logger(name)
