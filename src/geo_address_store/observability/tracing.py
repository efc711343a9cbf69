"""OpenTelemetry spans for import stages."""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GrpcOTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HttpOTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.trace import Status, StatusCode

from geo_address_store.config import CollectorConfig
from geo_address_store.observability.context import bind_span, enter_stage
from geo_address_store.observability.metrics import OTLP_EXPORT_ERRORS, OTLP_EXPORT_STATUS


if TYPE_CHECKING:
    from collections.abc import Iterator

    from opentelemetry.trace import Span

logger = logging.getLogger(__name__)

TRACER_NAME = "geo_address_store.import"
SPAN_PREFIX = "import."


def init_tracing(
    service_name: str = "geo-address-store",
    resource_attributes: dict[str, str] | None = None,
) -> TracerProvider:
    """Install a global tracer provider for this process."""
    provider = TracerProvider(resource=Resource.create({**(resource_attributes or {}), "service.name": service_name}))
    trace.set_tracer_provider(provider)
    logger.info("Tracing initialized for service %s", service_name)
    return provider


def _span_exporter(config: CollectorConfig) -> SpanExporter:
    options: dict[str, Any] = {
        "endpoint": config.collector_endpoint,
        "headers": config.headers,
        "timeout": config.timeout_seconds,
    }
    if config.otlp_protocol == "grpc":
        return GrpcOTLPSpanExporter(insecure=config.grpc_insecure, **options)
    return HttpOTLPSpanExporter(**options)


def configure_trace_exporter(config: CollectorConfig | None, provider: TracerProvider | None = None) -> bool:
    """Ship spans to the collector; returns whether export is active.

    Exporter construction failures are logged and counted, never raised: an
    import must not fail because its collector is unreachable.
    """
    if config is None or not config.enabled:
        return False

    target = provider or trace.get_tracer_provider()
    if not isinstance(target, TracerProvider):
        target = init_tracing(resource_attributes=dict(config.resource_attributes))

    OTLP_EXPORT_STATUS.labels(protocol=config.otlp_protocol).set(0)
    try:
        exporter = _span_exporter(config)
    except Exception as exc:
        logger.error("Span export to %s disabled: %s", config.collector_endpoint, exc, exc_info=True)
        OTLP_EXPORT_ERRORS.labels(protocol=config.otlp_protocol).inc()
        return False

    target.add_span_processor(BatchSpanProcessor(exporter))
    OTLP_EXPORT_STATUS.labels(protocol=config.otlp_protocol).set(1)
    logger.info("Exporting spans over OTLP/%s to %s", config.otlp_protocol, config.collector_endpoint)
    return True


@contextmanager
def stage_span(stage: str, **attributes: Any) -> Iterator[Span]:
    """Run one pipeline stage inside ``import.<stage>``.

    The run context moves to ``stage`` and its span id follows the new span,
    so log lines written inside correlate with it. Failures mark the span as
    errored and propagate unchanged.
    """
    ctx = enter_stage(stage)
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        SPAN_PREFIX + stage, record_exception=False, set_status_on_exception=False
    ) as span:
        span.set_attribute("import.stage", stage)
        if ctx.run_id:
            span.set_attribute("import.run_id", ctx.run_id)
        for key, value in attributes.items():
            span.set_attribute(key, value)
        span_context = span.get_span_context()
        if span_context.is_valid:
            bind_span(format(span_context.span_id, "016x"))
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise
        finally:
            bind_span(ctx.span_id)