"""
Logging and OpenTelemetry configuration for customer-rfv.

Library modules only obtain loggers, tracers and meters; nothing is exported
until an entry point calls :func:`configure_logging` and, optionally,
:func:`configure_observability`. All output goes to stderr so that the JSON
printed by the command line tools on stdout stays parseable.
"""

import logging
import sys

import structlog
from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

SERVICE_NAME = "customer-rfv"
SERVICE_VERSION = "1.0.0"

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure stdlib logging and structlog to write to stderr.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        json_output: Render structlog events as JSON lines instead of the
            human-readable console format
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def configure_observability(
    service_name: str = SERVICE_NAME,
    environment: str = "development",
    sampling_rate: float = 1.0,
):
    """
    Install OpenTelemetry tracer and meter providers with console export.

    Without this call the spans and counters emitted by the pipeline are
    no-ops.

    Args:
        service_name: Name of the service for telemetry identification
        environment: Deployment environment (development, staging, production)
        sampling_rate: Trace sampling rate (0.0-1.0). Default 1.0 = sample all traces.

    Returns:
        Tuple of (tracer, meter)
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": SERVICE_VERSION,
            "deployment.environment": environment,
        }
    )

    trace_provider = TracerProvider(resource=resource, sampler=_create_sampler(sampling_rate))
    trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        ConsoleMetricExporter(out=sys.stderr), export_interval_millis=5000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))

    logger.info(
        "observability_configured",
        service_name=service_name,
        environment=environment,
        sampling_rate=sampling_rate,
    )
    return trace.get_tracer(service_name), metrics.get_meter(service_name)


def _create_sampler(sampling_rate: float):
    """Create a trace sampler based on sampling rate.

    Args:
        sampling_rate: Sampling rate between 0.0 and 1.0

    Returns:
        OpenTelemetry Sampler instance
    """
    from opentelemetry.sdk.trace.sampling import (
        ParentBasedTraceIdRatio,
        TraceIdRatioBased,
    )

    if sampling_rate >= 1.0:
        return ParentBasedTraceIdRatio(1.0)
    elif sampling_rate <= 0.0:
        return TraceIdRatioBased(0.0)
    else:
        return ParentBasedTraceIdRatio(sampling_rate)
