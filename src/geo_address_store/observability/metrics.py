"""Import and search metrics.

Every metric is a Prometheus collector (scraped via ``get_metrics``) with an
OpenTelemetry twin created on first use, so the same numbers reach an OTLP
collector when one is configured. Gauges are mirrored as up-down counters
fed with the change since the last value set.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
    OTLPMetricExporter as GrpcOTLPMetricExporter,
)
from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
    OTLPMetricExporter as HttpOTLPMetricExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from geo_address_store.config import CollectorConfig


if TYPE_CHECKING:
    from collections.abc import Iterator

    from geo_address_store.domain.import_progress import ImportStats


METER_NAME = "geo_address_store"


class MetricKind(str, Enum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


@dataclass(slots=True)
class _MeterState:
    provider: MeterProvider | None = None
    resource: Resource | None = None
    reader: PeriodicExportingMetricReader | None = None
    meter: Any = None


_state = _MeterState()


def init_metrics(
    service_name: str = "geo-address-store",
    resource_attributes: dict[str, str] | None = None,
    metric_readers: Sequence[PeriodicExportingMetricReader] = (),
) -> MeterProvider:
    """Install the process meter provider once; later calls return it unchanged."""
    if _state.provider is not None:
        return _state.provider
    _state.resource = Resource.create({**(resource_attributes or {}), "service.name": service_name})
    _install_provider(MeterProvider(resource=_state.resource, metric_readers=list(metric_readers)))
    return _state.provider


def _install_provider(provider: MeterProvider) -> None:
    otel_metrics.set_meter_provider(provider)
    _state.provider = provider
    _state.meter = provider.get_meter(METER_NAME)


def _metric_exporter(config: CollectorConfig) -> MetricExporter:
    if config.otlp_protocol == "grpc":
        return GrpcOTLPMetricExporter(
            endpoint=config.collector_endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
            insecure=config.grpc_insecure,
        )
    # An OTLP/HTTP collector URL is often configured with the traces path.
    endpoint = config.collector_endpoint
    if endpoint.endswith("/v1/traces"):
        endpoint = endpoint.removesuffix("/v1/traces") + "/v1/metrics"
    return HttpOTLPMetricExporter(endpoint=endpoint, headers=config.headers, timeout=config.timeout_seconds)


def configure_metrics_exporter(config: CollectorConfig | None, *, service_name: str = "geo-address-store") -> None:
    """Attach a periodic OTLP reader; a no-op unless the collector is enabled.

    Readers can only be given to a ``MeterProvider`` at construction, so an
    already installed provider is replaced by one that keeps its resource.
    """
    if config is None or not config.enabled or _state.reader is not None:
        return

    reader = PeriodicExportingMetricReader(_metric_exporter(config))
    _state.reader = reader
    if _state.provider is None:
        init_metrics(service_name, dict(config.resource_attributes), metric_readers=[reader])
    else:
        _install_provider(MeterProvider(resource=_state.resource, metric_readers=[reader]))


def _meter() -> Any:
    if _state.meter is None:
        init_metrics()
    return _state.meter


class _Labelled:
    __slots__ = ("_bridge", "_labels")

    def __init__(self, bridge: MetricBridge, labels: dict[str, str]) -> None:
        self._bridge = bridge
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        self._bridge.inc(self._labels, amount)

    def observe(self, value: float) -> None:
        self._bridge.observe(self._labels, value)

    def set(self, value: float) -> None:
        self._bridge.set(self._labels, value)


class MetricBridge:
    """One Prometheus collector plus its lazily created OpenTelemetry instrument."""

    def __init__(self, kind: MetricKind, prom: Counter | Histogram | Gauge, *, name: str, description: str) -> None:
        self.kind = kind
        self.prom = prom
        self.name = name
        self.description = description
        self._instrument: Any = None
        self._gauge_values: dict[tuple[tuple[str, str], ...], float] = {}

    def labels(self, **labels: str) -> _Labelled:
        return _Labelled(self, labels)

    def _otel(self) -> Any:
        if self._instrument is None:
            meter = _meter()
            if self.kind is MetricKind.COUNTER:
                self._instrument = meter.create_counter(self.name, description=self.description)
            elif self.kind is MetricKind.HISTOGRAM:
                self._instrument = meter.create_histogram(self.name, description=self.description)
            else:
                self._instrument = meter.create_up_down_counter(self.name, description=self.description)
        return self._instrument

    def inc(self, labels: dict[str, str], amount: float) -> None:
        self.prom.labels(**labels).inc(amount)
        self._otel().add(amount, labels)

    def observe(self, labels: dict[str, str], value: float) -> None:
        self.prom.labels(**labels).observe(value)
        self._otel().record(value, labels)

    def set(self, labels: dict[str, str], value: float) -> None:
        self.prom.labels(**labels).set(value)
        key = tuple(sorted(labels.items()))
        change = value - self._gauge_values.get(key, 0.0)
        self._gauge_values[key] = value
        if change:
            self._otel().add(change, labels)


def _bridge(
    kind: MetricKind,
    name: str,
    description: str,
    labelnames: Sequence[str],
    buckets: Sequence[float] | None = None,
) -> MetricBridge:
    if kind is MetricKind.COUNTER:
        prom: Counter | Histogram | Gauge = Counter(name, description, labelnames)
    elif kind is MetricKind.HISTOGRAM:
        prom = Histogram(name, description, labelnames, buckets=buckets or Histogram.DEFAULT_BUCKETS)
    else:
        prom = Gauge(name, description, labelnames)
    return MetricBridge(kind, prom, name=name, description=description)


# Counter names carry their ``_total`` suffix; prometheus_client strips it
# from the family name and adds it back to the sample.
FEATURES_PROCESSED = _bridge(
    MetricKind.COUNTER, "features_processed_total", "Input features by extraction outcome", ["store", "outcome"]
)
FEATURES_SKIPPED = _bridge(
    MetricKind.COUNTER,
    "features_skipped_total",
    "Input features that produced no record, by reason",
    ["store", "reason"],
)
RECORDS_FLUSHED = _bridge(
    MetricKind.COUNTER,
    "records_flushed_total",
    "Address records committed to the store, duplicates included",
    ["store"],
)
FLUSH_LATENCY = _bridge(
    MetricKind.HISTOGRAM,
    "flush_latency_seconds",
    "Time to insert and commit one batch window",
    ["store"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)
IMPORT_THROUGHPUT = _bridge(
    MetricKind.GAUGE,
    "import_throughput_records_per_second",
    "Records per second measured over the last flush interval",
    ["store"],
)
ADDRESS_ROW_COUNT = _bridge(
    MetricKind.GAUGE, "address_row_count", "Rows in the addresses relation after indexing", ["store"]
)
SEARCH_LATENCY = _bridge(
    MetricKind.HISTOGRAM,
    "search_latency_seconds",
    "Full-text address search latency",
    ["store"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
)
OTLP_EXPORT_ERRORS = _bridge(
    MetricKind.COUNTER, "otlp_export_errors_total", "OTLP exporter configuration failures", ["protocol"]
)
OTLP_EXPORT_STATUS = _bridge(
    MetricKind.GAUGE, "otlp_exporter_enabled", "1 while OTLP export is active for the protocol", ["protocol"]
)


def publish_feature_counts(store: str, previous: ImportStats, current: ImportStats) -> None:
    """Add the feature outcomes seen between two stats snapshots."""
    outcomes = {
        "accepted": current.records_accepted - previous.records_accepted,
        "excluded": current.features_excluded - previous.features_excluded,
        "malformed": current.features_malformed - previous.features_malformed,
    }
    for outcome, amount in outcomes.items():
        if amount:
            FEATURES_PROCESSED.labels(store=store, outcome=outcome).inc(amount)
    for now, before in ((current.excluded, previous.excluded), (current.malformed, previous.malformed)):
        for reason, count in now.items():
            amount = count - before.get(reason, 0)
            if amount:
                FEATURES_SKIPPED.labels(store=store, reason=reason).inc(amount)


@contextmanager
def track_latency(histogram: MetricBridge, **labels: str) -> Iterator[None]:
    """Observe the wall time of the block, including when it raises."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
