"""Import pipeline orchestration: decode, extract, load, index.

One ``ImportService`` instance drives one run against one store. Each stage
runs inside its own span; storage and input failures surface as
``PipelineError`` carrying the stage that failed, with the original error
chained. A shutdown request is honored at the next flush boundary and ends
the run as ``interrupted``, keeping every batch committed so far.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from pathlib import Path
import threading
import time
from uuid import uuid4

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from geo_address_store.config import Settings
from geo_address_store.domain.errors import ImportInterrupted, InputError, PipelineError, StoreError
from geo_address_store.domain.import_progress import FlushReport, ImportProgress, ImportReport, ImportStats
from geo_address_store.domain.model import ExtractionResult
from geo_address_store.ingest.extractor import AddressExtractor
from geo_address_store.ingest.stream_decoder import open_features
from geo_address_store.observability.context import bind_run
from geo_address_store.observability.logging import configure_logging
from geo_address_store.observability.metrics import (
    ADDRESS_ROW_COUNT,
    configure_metrics_exporter,
    init_metrics,
    publish_feature_counts,
)
from geo_address_store.observability.tracing import configure_trace_exporter, init_tracing, stage_span
from geo_address_store.storage.address_store import AddressStore
from geo_address_store.storage.batch_loader import BatchLoader
from geo_address_store.storage.index_builder import IndexBuilder


logger = logging.getLogger(__name__)


@dataclass
class _Installed:
    tracer_provider: TracerProvider | None = None


_installed = _Installed()


def configure_observability(settings: Settings) -> TracerProvider:
    """Install logging, tracing and metrics for a process that runs imports.

    Logging is reconfigured on every call. Tracing and metrics are installed
    once per process; later calls return the provider from the first one.
    """
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    if _installed.tracer_provider is not None:
        return _installed.tracer_provider

    resource_attributes = dict(settings.collector.resource_attributes)
    active = trace.get_tracer_provider()
    if isinstance(active, TracerProvider):
        provider = active
    else:
        provider = init_tracing(service_name=settings.service_name, resource_attributes=resource_attributes)
    configure_trace_exporter(settings.collector, provider)
    configure_metrics_exporter(settings.collector, service_name=settings.service_name)
    init_metrics(service_name=settings.service_name, resource_attributes=resource_attributes)
    _installed.tracer_provider = provider
    return provider


class ImportService:
    """Runs the import pipeline for one ``Settings`` instance."""

    def __init__(
        self,
        settings: Settings,
        *,
        shutdown: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        extractor: AddressExtractor | None = None,
    ) -> None:
        self.settings = settings
        self.shutdown = shutdown
        self._clock = clock
        self._sleep = sleep
        self.extractor = extractor or AddressExtractor(reject_null_island=settings.reject_null_island)
        self.run_id = uuid4().hex[:12]
        self.progress = ImportProgress(
            estimated_total_records=settings.estimated_total_records,
            started_monotonic=clock(),
        )
        self._stage = "open_store"
        self._store_label = settings.require_db_path().name
        self._published = ImportStats()

    def run(self) -> ImportReport:
        """Execute the whole pipeline.

        Returns the final report; its phase is ``completed``, or
        ``interrupted`` when shutdown was requested mid-load.

        Raises:
            PipelineError: a stage failed; ``__cause__`` holds the original error.
        """
        bind_run(self.run_id, stage=self._stage)
        try:
            input_path = self.settings.require_input_path()
        except ValueError as exc:
            self.progress.mark_failed(error=str(exc))
            raise PipelineError("decode", str(exc)) from exc

        logger.info("Starting import %s: %s -> %s", self.run_id, input_path, self.settings.db_path)
        store: AddressStore | None = None
        try:
            with stage_span("open_store", db_path=str(self.settings.db_path)):
                store = AddressStore.create(self.settings, sleep=self._sleep)
            try:
                self._load(store, input_path)
            except ImportInterrupted as interrupted:
                return self._interrupted(interrupted)
            indexed_rows = self._index(store)
        except InputError as exc:
            raise self._failed("decode", exc) from exc
        except StoreError as exc:
            raise self._failed(self._stage, exc) from exc
        finally:
            if store is not None:
                store.close()

        self.progress.mark_completed()
        report = self.progress.report(now=self._clock(), indexed_rows=indexed_rows)
        self._log_summary(report)
        return report

    def _load(self, store: AddressStore, input_path: Path) -> ImportStats:
        self._stage = "load"
        self.progress.start_loading()
        loader = BatchLoader(
            store,
            self.settings,
            progress=self.progress,
            clock=self._clock,
            shutdown=self.shutdown,
            on_flush=self._on_flush,
        )
        with stage_span("load", input_path=str(input_path)):
            with open_features(input_path, chunk_size=self.settings.read_chunk_size) as features:
                for decoded in features:
                    if not decoded.ok:
                        self.progress.record_result(ExtractionResult.malformed(decoded.error))
                        continue
                    result = self.extractor.extract(decoded.feature)
                    self.progress.record_result(result)
                    if result.record is not None:
                        loader.add(result.record)
            stats = loader.finish()
        self._publish_counts()
        return stats

    def _index(self, store: AddressStore) -> int:
        self._stage = "index"
        self.progress.start_indexing()
        with stage_span("index"):
            build = IndexBuilder(store).build()
        ADDRESS_ROW_COUNT.labels(store=self._store_label).set(build.indexed_rows)
        return build.indexed_rows

    def _on_flush(self, report: FlushReport) -> None:
        self._publish_counts()

    def _publish_counts(self) -> None:
        current = self.progress.stats
        publish_feature_counts(self._store_label, self._published, current)
        self._published = current

    def _interrupted(self, interrupted: ImportInterrupted) -> ImportReport:
        self.progress.mark_interrupted()
        self._publish_counts()
        report = self.progress.report(now=self._clock())
        logger.warning(
            "Import %s interrupted after %d committed records; the full-text index was not built",
            self.run_id,
            interrupted.records_committed,
        )
        self._log_summary(report)
        return report

    def _failed(self, stage: str, exc: Exception) -> PipelineError:
        self.progress.mark_failed(error=str(exc))
        self._publish_counts()
        logger.error("Import %s failed during %s: %s", self.run_id, stage, exc)
        return PipelineError(stage, str(exc))

    def _log_summary(self, report: ImportReport) -> None:
        stats = report.stats
        logger.info(
            "Import %s %s in %.1fs: %d features, %d accepted, %d rows inserted, %d duplicates, "
            "%d excluded %s, %d malformed %s",
            self.run_id,
            report.phase.value,
            report.elapsed_seconds,
            stats.features_seen,
            stats.records_accepted,
            stats.rows_inserted,
            stats.duplicates_absorbed,
            stats.features_excluded,
            dict(sorted(stats.excluded.items())),
            stats.features_malformed,
            dict(sorted(stats.malformed.items())),
        )


def run_import(
    settings: Settings,
    *,
    shutdown: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ImportReport:
    """Import ``settings.input_path`` into ``settings.db_path`` and build its search index."""
    return ImportService(settings, shutdown=shutdown, clock=clock, sleep=sleep).run()
