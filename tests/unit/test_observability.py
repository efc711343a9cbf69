"""Unit tests for observability module."""

import io
import json
import logging
from pathlib import Path
import sys
from unittest.mock import Mock

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricExportResult
from prometheus_client import REGISTRY
import pytest

from geo_address_store.config import CollectorConfig
from geo_address_store.domain.import_progress import ImportPhase, ImportStats
from geo_address_store.observability import (
    SEARCH_LATENCY,
    JsonFormatter,
    RunContextFilter,
    bind_run,
    clear_run_context,
    configure_logging,
    configure_metrics_exporter,
    configure_trace_exporter,
    current_run_context,
    enter_stage,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    init_tracing,
    metrics as metrics_module,
    publish_feature_counts,
    stage_span,
    tracing as tracing_module,
    track_latency,
)
from geo_address_store.observability.context import bind_span


def _record(message: str = "hello", level: int = logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("geo_address_store.storage.batch_loader", level, __file__, 1, message, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _format(record: logging.LogRecord) -> dict:
    RunContextFilter().filter(record)
    return json.loads(JsonFormatter().format(record))


@pytest.fixture(autouse=True)
def fresh_run_context():
    clear_run_context()
    yield
    clear_run_context()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


class _FakeMetricExporter:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self._preferred_temporality = None
        self._preferred_aggregation = None

    def export(self, metrics_data, timeout_millis=10_000, **kwargs):
        return MetricExportResult.SUCCESS

    def force_flush(self, timeout_millis=10_000):
        return True

    def shutdown(self, timeout_millis=30_000, **kwargs):
        return None


@pytest.mark.unit
class TestRunContext:
    def test_anonymous_context_outside_a_run(self):
        ctx = current_run_context()

        assert len(ctx.trace_id) == 32
        assert len(ctx.span_id) == 16
        assert ctx.log_fields().keys() == {"trace_id", "span_id"}

    def test_bind_run_starts_a_new_trace(self):
        before = current_run_context()

        ctx = bind_run("run-1", stage="open_store")

        assert ctx.trace_id != before.trace_id
        assert current_run_context() == ctx
        assert ctx.log_fields()["stage"] == "open_store"

    def test_stage_and_span_changes_keep_the_run(self):
        ctx = bind_run("run-1")

        enter_stage("load")
        bind_span("f" * 16)

        current = current_run_context()
        assert (current.trace_id, current.run_id, current.stage, current.span_id) == (
            ctx.trace_id,
            "run-1",
            "load",
            "f" * 16,
        )


@pytest.mark.unit
class TestJsonFormatter:
    def test_run_fields_come_from_the_bound_context(self):
        bind_run("run-1", stage="load")

        payload = _format(_record("Processed 10 addresses"))

        assert payload["msg"] == "Processed 10 addresses"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "geo_address_store.storage.batch_loader"
        assert payload["run_id"] == "run-1"
        assert payload["stage"] == "load"
        assert len(payload["trace_id"]) == 32

    def test_no_run_fields_outside_a_run(self):
        payload = _format(_record())

        assert "run_id" not in payload
        assert "stage" not in payload

    def test_pipeline_extras_are_serialized(self):
        payload = _format(
            _record(
                db_path=Path("/data/addresses.db"),
                phase=ImportPhase.INTERRUPTED,
                stats=ImportStats(records_accepted=3, excluded={"missing_street": 1}),
                reasons={"null_island", "missing_street"},
            )
        )

        assert payload["db_path"] == "/data/addresses.db"
        assert payload["phase"] == "interrupted"
        assert payload["stats"]["records_accepted"] == 3
        assert payload["stats"]["excluded"] == {"missing_street": 1}
        assert payload["reasons"] == ["missing_street", "null_island"]

    def test_collector_headers_are_redacted(self):
        payload = _format(_record(headers={"authorization": "Bearer abc"}))

        assert payload["headers"] == "[REDACTED]"

    def test_long_text_is_clipped(self):
        payload = _format(_record("x" * 5000, reason="y" * 900))

        assert len(payload["msg"]) == JsonFormatter.MAX_MESSAGE_CHARS + 3
        assert len(payload["reason"]) == JsonFormatter.MAX_FIELD_CHARS + 3

    def test_exception_text_is_included(self):
        try:
            raise ValueError("bad batch")
        except ValueError:
            record = _record("failed", level=logging.ERROR, exc_info=sys.exc_info())

        payload = _format(record)

        assert "ValueError: bad batch" in payload["exc"]


@pytest.mark.unit
class TestConfigureLogging:
    def test_json_lines_carry_run_and_extras(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging("debug", json_output=True, stream=stream)
        bind_run("run-7", stage="index")

        logging.getLogger("geo_address_store.storage.index_builder").info(
            "Built index", extra={"indexed_rows": 4}
        )

        payload = json.loads(stream.getvalue().splitlines()[-1])
        assert payload["msg"] == "Built index"
        assert payload["indexed_rows"] == 4
        assert payload["run_id"] == "run-7"
        assert payload["stage"] == "index"
        assert restore_root_logger.level == logging.DEBUG

    def test_text_output_shows_run_label(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging("info", json_output=False, stream=stream)
        bind_run("run-7", stage="load")

        logging.getLogger("geo_address_store.test").warning("hello")

        line = stream.getvalue().strip()
        assert "run-7:load" in line
        assert line.endswith("hello")

    def test_replaces_existing_handlers_and_applies_overrides(self, restore_root_logger):
        restore_root_logger.addHandler(logging.NullHandler())

        handler = configure_logging("warning", logger_levels={"geo_address_store.ingest": "debug"})

        try:
            assert restore_root_logger.handlers == [handler]
            assert isinstance(handler.formatter, JsonFormatter)
            assert logging.getLogger("geo_address_store.ingest").level == logging.DEBUG
        finally:
            logging.getLogger("geo_address_store.ingest").setLevel(logging.NOTSET)

    def test_unknown_level_falls_back_to_info(self, restore_root_logger):
        configure_logging("chatty", stream=io.StringIO())

        assert restore_root_logger.level == logging.INFO


@pytest.mark.unit
class TestTracing:
    def test_stage_span_moves_run_context(self):
        init_tracing("test-service")
        outer = bind_run("run-1")

        with stage_span("load", input_path="/data/in.geojson") as span:
            inside = current_run_context()
            assert inside.stage == "load"
            assert inside.span_id == format(span.get_span_context().span_id, "016x")
            assert span.attributes["import.stage"] == "load"
            assert span.attributes["import.run_id"] == "run-1"
            assert span.attributes["input_path"] == "/data/in.geojson"

        after = current_run_context()
        assert after.span_id == outer.span_id
        assert after.stage == "load"

    def test_stage_span_propagates_errors(self):
        init_tracing("test-service")
        outer = bind_run("run-1")

        with pytest.raises(RuntimeError, match="boom"):
            with stage_span("index"):
                raise RuntimeError("boom")

        assert current_run_context().span_id == outer.span_id

    def test_init_tracing_applies_resource_attributes(self):
        provider = init_tracing("test-service", resource_attributes={"service.version": "2.0.0"})

        assert provider.resource.attributes["service.version"] == "2.0.0"
        assert provider.resource.attributes["service.name"] == "test-service"

    def test_disabled_collector_is_a_noop(self, monkeypatch):
        exporter = Mock()
        monkeypatch.setattr(tracing_module, "GrpcOTLPSpanExporter", exporter)

        assert configure_trace_exporter(CollectorConfig(enabled=False)) is False

        exporter.assert_not_called()

    def test_configure_trace_exporter_adds_span_processor(self, monkeypatch):
        provider = init_tracing("test-service")
        config = CollectorConfig(enabled=True, otlp_protocol="http", collector_endpoint="http://collector/v1/traces")
        exporter = Mock(return_value=object())
        monkeypatch.setattr(tracing_module, "HttpOTLPSpanExporter", exporter)
        provider.add_span_processor = Mock()  # type: ignore[method-assign]

        assert configure_trace_exporter(config, provider=provider) is True

        provider.add_span_processor.assert_called_once()
        assert "insecure" not in exporter.call_args.kwargs
        assert REGISTRY.get_sample_value("otlp_exporter_enabled", {"protocol": "http"}) == 1

    def test_configure_trace_exporter_handles_exporter_failure(self, monkeypatch):
        config = CollectorConfig(enabled=True, otlp_protocol="grpc")
        monkeypatch.setattr(tracing_module, "GrpcOTLPSpanExporter", Mock(side_effect=RuntimeError("boom")))

        assert configure_trace_exporter(config, provider=init_tracing("test-service")) is False

        assert REGISTRY.get_sample_value("otlp_exporter_enabled", {"protocol": "grpc"}) == 0


@pytest.mark.unit
class TestMetrics:
    def test_init_metrics_creates_provider(self, monkeypatch):
        monkeypatch.setattr(metrics_module, "_state", metrics_module._MeterState())

        provider = init_metrics("test-service", {"service.version": "1.0.0"})

        assert isinstance(provider, MeterProvider)
        assert init_metrics("test-service") is provider

    def test_configure_metrics_exporter_http_rewrites_endpoint(self, monkeypatch):
        monkeypatch.setattr(metrics_module, "_state", metrics_module._MeterState())
        monkeypatch.setattr(metrics_module, "HttpOTLPMetricExporter", _FakeMetricExporter)
        config = CollectorConfig(
            enabled=True,
            otlp_protocol="http",
            collector_endpoint="http://localhost:4318/v1/traces",
        )

        configure_metrics_exporter(config, service_name="test-service")

        reader = metrics_module._state.reader
        assert reader._exporter.kwargs["endpoint"] == "http://localhost:4318/v1/metrics"

    def test_configure_metrics_exporter_grpc(self, monkeypatch):
        monkeypatch.setattr(metrics_module, "_state", metrics_module._MeterState())
        monkeypatch.setattr(metrics_module, "GrpcOTLPMetricExporter", _FakeMetricExporter)
        config = CollectorConfig(enabled=True, otlp_protocol="grpc", collector_endpoint="http://localhost:4317")

        configure_metrics_exporter(config, service_name="test-service")

        reader = metrics_module._state.reader
        assert reader._exporter.kwargs == {
            "endpoint": "http://localhost:4317",
            "headers": {},
            "timeout": 10,
            "insecure": True,
        }

    def test_gauge_forwards_only_changes_to_otel(self, monkeypatch):
        instrument = Mock()
        monkeypatch.setattr(metrics_module.ADDRESS_ROW_COUNT, "_instrument", instrument)
        gauge = metrics_module.ADDRESS_ROW_COUNT.labels(store="gauge-test.db")

        gauge.set(5)
        gauge.set(5)
        gauge.set(3)

        assert [call.args for call in instrument.add.call_args_list] == [
            (5, {"store": "gauge-test.db"}),
            (-2, {"store": "gauge-test.db"}),
        ]
        assert REGISTRY.get_sample_value("address_row_count", {"store": "gauge-test.db"}) == 3

    def test_publish_feature_counts_adds_deltas(self):
        store = "publish-test.db"
        previous = ImportStats(records_accepted=2, excluded={"missing_street": 1})
        current = ImportStats(
            records_accepted=5,
            excluded={"missing_street": 4, "null_island": 1},
            malformed={"malformed_json": 2},
        )

        publish_feature_counts(store, previous, current)

        def sample(name, **labels):
            return REGISTRY.get_sample_value(name, {"store": store, **labels})

        assert sample("features_processed_total", outcome="accepted") == 3
        assert sample("features_processed_total", outcome="excluded") == 4
        assert sample("features_processed_total", outcome="malformed") == 2
        assert sample("features_skipped_total", reason="missing_street") == 3
        assert sample("features_skipped_total", reason="null_island") == 1
        assert sample("features_skipped_total", reason="malformed_json") == 2

    def test_track_latency_observes_on_error(self):
        labels = {"store": "latency-test.db"}

        with pytest.raises(ValueError):
            with track_latency(SEARCH_LATENCY, **labels):
                raise ValueError("query failed")

        assert REGISTRY.get_sample_value("search_latency_seconds_count", labels) == 1

    def test_exposition(self):
        assert b"records_flushed_total" in get_metrics()
        assert get_metrics_content_type().startswith("text/plain")
