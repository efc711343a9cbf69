"""Observability module for structured logging, metrics and tracing."""

from geo_address_store.observability.context import (
    RunContext,
    bind_run,
    clear_run_context,
    current_run_context,
    enter_stage,
)
from geo_address_store.observability.logging import JsonFormatter, RunContextFilter, configure_logging
from geo_address_store.observability.metrics import (
    ADDRESS_ROW_COUNT,
    FEATURES_PROCESSED,
    FEATURES_SKIPPED,
    FLUSH_LATENCY,
    IMPORT_THROUGHPUT,
    RECORDS_FLUSHED,
    SEARCH_LATENCY,
    configure_metrics_exporter,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    publish_feature_counts,
    track_latency,
)
from geo_address_store.observability.tracing import (
    configure_trace_exporter,
    init_tracing,
    stage_span,
)


__all__ = [
    "ADDRESS_ROW_COUNT",
    "FEATURES_PROCESSED",
    "FEATURES_SKIPPED",
    "FLUSH_LATENCY",
    "IMPORT_THROUGHPUT",
    "RECORDS_FLUSHED",
    "SEARCH_LATENCY",
    "JsonFormatter",
    "RunContext",
    "RunContextFilter",
    "bind_run",
    "clear_run_context",
    "configure_logging",
    "configure_metrics_exporter",
    "configure_trace_exporter",
    "get_metrics",
    "get_metrics_content_type",
    "current_run_context",
    "enter_stage",
    "init_metrics",
    "init_tracing",
    "publish_feature_counts",
    "stage_span",
    "track_latency",
]
