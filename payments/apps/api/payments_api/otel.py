"""OpenTelemetry providers for the API (enabled with OTEL_ENABLED=true).

Only imported when telemetry is on, so the opentelemetry packages stay an
optional extra. Providers are returned to the caller rather than read back
from the globals, which lets tests build several instrumented apps in one
process.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter

logger = logging.getLogger(__name__)


@dataclass
class OtelProviders:
    tracer_provider: TracerProvider
    meter_provider: MeterProvider


def init_otel(
    service_name: str,
    *,
    span_exporter: Optional[SpanExporter] = None,
    metric_reader: Optional[MetricReader] = None,
) -> OtelProviders:
    """Build tracer and meter providers.

    Without injected exporters, spans and metrics go to the OTLP/HTTP endpoint
    configured through the standard OTEL_EXPORTER_OTLP_* variables, and the
    providers are installed as the process globals.
    """
    resource = Resource.create({"service.name": service_name})
    install_globals = span_exporter is None and metric_reader is None

    tracer_provider = TracerProvider(resource=resource)
    if span_exporter is None:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    else:
        tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))

    if metric_reader is None:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter

        metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter())
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])

    if install_globals:
        trace.set_tracer_provider(tracer_provider)
        metrics.set_meter_provider(meter_provider)

    logger.info("OTEL_INITIALIZED", extra={"service_name": service_name})
    return OtelProviders(tracer_provider=tracer_provider, meter_provider=meter_provider)


def current_trace_ids() -> dict[str, Any]:
    """trace_id/span_id of the active span, for log correlation."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return {}
    return {"trace_id": f"{context.trace_id:032x}", "span_id": f"{context.span_id:016x}"}
