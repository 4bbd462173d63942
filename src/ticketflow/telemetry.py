"""OpenTelemetry instrumentation for ticketflow."""

from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ticketflow.logger import get_logger
from ticketflow.models import ExecutionResult

logger = get_logger(__name__)

_initialized = False
_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None
_execution_counter: metrics.Counter | None = None
_duration_histogram: metrics.Histogram | None = None


def init_telemetry(
    endpoint: str,
    service_name: str,
    service_version: str | None = None,
) -> None:
    """Initialize OpenTelemetry tracing and metrics.

    Does nothing when no endpoint is configured; spans then go to the
    API's no-op tracer.

    Args:
        endpoint: OTLP endpoint URL (e.g., http://localhost:4318)
        service_name: Service name for telemetry (e.g., "ticketflow")
        service_version: Optional service version (e.g., "0.1.0")
    """
    global _initialized, _tracer, _meter
    global _execution_counter, _duration_histogram

    if _initialized or not endpoint:
        return

    resource_attrs = {"service.name": service_name}
    if service_version:
        resource_attrs["service.version"] = service_version
    resource = Resource.create(resource_attrs)

    trace_exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    _tracer = trace.get_tracer(__name__)

    metric_exporter = OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics")
    metric_reader = PeriodicExportingMetricReader(metric_exporter, export_interval_millis=10000)
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    _meter = metrics.get_meter(__name__)

    _execution_counter = _meter.create_counter(
        "ticket.executions",
        unit="1",
        description="Number of ticket executions by outcome",
    )
    _duration_histogram = _meter.create_histogram(
        "ticket.execution.duration",
        unit="ms",
        description="Duration of executor runs in milliseconds",
    )

    _initialized = True
    version_info = f", version={service_version}" if service_version else ""
    logger.info(
        f"OpenTelemetry initialized: endpoint={endpoint}, service={service_name}{version_info}"
    )


def get_tracer() -> trace.Tracer:
    """Get the global tracer, or a no-op tracer if not initialized."""
    return _tracer or trace.get_tracer(__name__)


def execution_attributes(result: ExecutionResult) -> dict[str, Any]:
    """Metric/span attributes describing an execution result."""
    outcome = "success" if result.success else result.exit_kind.value
    attributes: dict[str, Any] = {
        "ticket.id": result.ticket_id,
        "model": result.model,
        "outcome": outcome,
    }
    if result.exit_code is not None:
        attributes["exit_code"] = result.exit_code
    return attributes


def record_execution(result: ExecutionResult) -> None:
    """Record an execution outcome and its duration to OTel."""
    if not _initialized:
        return

    attributes = execution_attributes(result)
    # ticket.id is unbounded; keep it off metric series
    metric_attributes = {k: v for k, v in attributes.items() if k != "ticket.id"}

    if _execution_counter:
        _execution_counter.add(1, metric_attributes)

    if _duration_histogram and result.duration > 0:
        _duration_histogram.record(result.duration * 1000, metric_attributes)
