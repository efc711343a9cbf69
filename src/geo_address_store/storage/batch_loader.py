"""Batch loader: turns an unbounded record stream into bounded atomic writes.

One transaction and one in-memory buffer are open at a time. The buffer is
flushed as soon as it holds ``batch_max_records`` records or the transaction
has been open for ``batch_max_seconds``, whichever comes first. The first
bound caps memory, the second caps how much work a crash can lose when
records arrive slowly.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
import sqlite3
import threading
import time

from geo_address_store.config import Settings
from geo_address_store.domain.errors import ImportInterrupted, StoreError
from geo_address_store.domain.import_progress import FlushReport, ImportProgress, ImportStats
from geo_address_store.domain.model import AddressRecord, ExtractionResult
from geo_address_store.observability.metrics import FLUSH_LATENCY, IMPORT_THROUGHPUT, RECORDS_FLUSHED
from geo_address_store.storage.address_store import AddressStore


logger = logging.getLogger(__name__)


class BatchLoader:
    """Accumulates records and commits them in size- or time-windowed transactions.

    Deduplication is left to the store's UNIQUE constraint; the loader keeps
    no record of what earlier flushes wrote.
    """

    def __init__(
        self,
        store: AddressStore,
        settings: Settings,
        *,
        progress: ImportProgress | None = None,
        clock: Callable[[], float] = time.monotonic,
        shutdown: threading.Event | None = None,
        on_flush: Callable[[FlushReport], None] | None = None,
    ) -> None:
        self.store = store
        self.max_records = settings.batch_max_records
        self.max_seconds = settings.batch_max_seconds
        self.chunk_size = settings.insert_chunk_size
        self._clock = clock
        self.progress = progress or ImportProgress(
            estimated_total_records=settings.estimated_total_records,
            started_monotonic=clock(),
        )
        self._shutdown = shutdown
        self._on_flush = on_flush
        self._buffer: list[AddressRecord] = []
        self._transaction_started: float | None = None
        self._store_label = store.db_path.name

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def start(self) -> None:
        """Open the transaction the next batch will be written in."""
        self.store.begin()
        self._transaction_started = self._clock()

    def add(self, record: AddressRecord) -> FlushReport | None:
        """Buffer ``record`` and flush if a window bound is reached."""
        if self._transaction_started is None:
            self.start()
        self._buffer.append(record)
        if self.should_flush():
            return self.flush()
        return None

    def should_flush(self) -> bool:
        if len(self._buffer) >= self.max_records:
            return True
        return self._transaction_started is not None and (
            self._clock() - self._transaction_started >= self.max_seconds
        )

    def flush(self, *, reopen: bool = True) -> FlushReport | None:
        """Write the buffer in sub-batches, commit, and open the next transaction.

        A failure rolls back only the in-flight batch; earlier commits stay.

        Raises:
            StoreError: an insert or the commit failed.
            ImportInterrupted: shutdown was requested; raised after the commit.
        """
        if not self._buffer:
            return None
        if self._transaction_started is None:
            self.start()

        batch = self._buffer
        self._buffer = []
        flush_started = self._clock()
        try:
            inserted = self.store.insert_records(batch, chunk_size=self.chunk_size)
            self.store.commit()
        except sqlite3.Error as exc:
            self._abort()
            raise StoreError("flush", str(exc)) from exc
        except StoreError:
            self._abort()
            raise
        self._transaction_started = None

        now = self._clock()
        report = self.progress.record_flush(
            records=len(batch),
            rows_inserted=inserted,
            duration=now - flush_started,
            now=now,
        )
        RECORDS_FLUSHED.labels(store=self._store_label).inc(report.records)
        FLUSH_LATENCY.labels(store=self._store_label).observe(report.duration_seconds)
        IMPORT_THROUGHPUT.labels(store=self._store_label).set(report.records_per_second)
        logger.info("%s", report.describe())
        if self._on_flush is not None:
            self._on_flush(report)

        if reopen:
            if self._shutdown is not None and self._shutdown.is_set():
                raise ImportInterrupted(self.progress.records_flushed)
            self.start()
        return report

    def finish(self) -> ImportStats:
        """Flush the final partial batch unconditionally and leave no transaction open."""
        if self._buffer:
            self.flush(reopen=False)
        elif self._transaction_started is not None:
            self.store.commit()
            self._transaction_started = None
        return self.progress.stats

    def load(self, records: Iterable[AddressRecord]) -> ImportStats:
        """Drive ``add`` over ``records``, counting each as accepted, then ``finish``."""
        for record in records:
            self.progress.record_result(ExtractionResult.accepted(record))
            self.add(record)
        return self.finish()

    def _abort(self) -> None:
        self._transaction_started = None
        try:
            self.store.rollback()
        except StoreError as rollback_error:
            logger.warning("Rollback after failed flush also failed: %s", rollback_error)
