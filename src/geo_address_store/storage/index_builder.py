"""Post-load index and full-text build.

Runs once, after the last batch is committed. Secondary indices are created
only now because maintaining them during the bulk insert would slow every
flush. The FTS5 table is an external-content mirror of ``addresses`` filled
by a single bulk copy; it is never kept in sync incrementally.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import sqlite3
import time

from geo_address_store.domain.errors import StoreError
from geo_address_store.storage.address_store import ADDRESS_TABLE, AddressStore
from geo_address_store.storage.sqlite_pragmas import finalize_journal


logger = logging.getLogger(__name__)

FTS_TABLE = "address_fts"

SECONDARY_INDEXES = (
    f"CREATE INDEX idx_city ON {ADDRESS_TABLE}(city)",
    f"CREATE INDEX idx_street ON {ADDRESS_TABLE}(street)",
    f"CREATE INDEX idx_street_house ON {ADDRESS_TABLE}(street, house_number)",
)

# Hyphen is a token character so "Haupt-Straße" stays one token; diacritics are kept.
CREATE_FTS_SQL = f"""
    CREATE VIRTUAL TABLE {FTS_TABLE} USING fts5(
        street,
        house_number,
        city,
        content='{ADDRESS_TABLE}',
        content_rowid='id',
        tokenize="unicode61 remove_diacritics 0 tokenchars '-'"
    )
"""

POPULATE_FTS_SQL = (
    f"INSERT INTO {FTS_TABLE}(rowid, street, house_number, city) "
    f"SELECT id, street, house_number, city FROM {ADDRESS_TABLE}"
)


@dataclass(slots=True)
class IndexBuildReport:
    """Per-step durations of one index build."""

    step_seconds: dict[str, float] = field(default_factory=dict)
    indexed_rows: int = 0

    @property
    def total_seconds(self) -> float:
        return sum(self.step_seconds.values())


class IndexBuilder:
    """Builds secondary indices, compacts the store and mirrors text into FTS5."""

    def __init__(self, store: AddressStore, *, clock: Callable[[], float] = time.perf_counter) -> None:
        self.store = store
        self._clock = clock

    def build(self) -> IndexBuildReport:
        """Run every step in order; any failure raises ``StoreError(stage="index")``."""
        if self.store.in_transaction:
            self.store.commit()
        report = IndexBuildReport()
        self._step(report, "indexes", self.create_indexes)
        self._step(report, "analyze", self.analyze)
        self._step(report, "vacuum", self.vacuum)
        self._step(report, "fts_create", self.create_fts)
        report.indexed_rows = self._step(report, "fts_populate", self.populate_fts)
        self._step(report, "finalize", self.finalize)
        logger.info(
            "Full-text index built over %d rows in %.1fs",
            report.indexed_rows,
            report.total_seconds,
        )
        return report

    def create_indexes(self) -> None:
        logger.info("Creating secondary indexes")
        for statement in SECONDARY_INDEXES:
            self.store.execute(statement, stage="index")

    def analyze(self) -> None:
        self.store.execute("ANALYZE", stage="index")
        self.store.execute("PRAGMA optimize", stage="index")

    def vacuum(self) -> None:
        logger.info("Compacting store (VACUUM)")
        self.store.execute("VACUUM", stage="index")

    def create_fts(self) -> None:
        logger.info("Creating FTS5 full-text table %s", FTS_TABLE)
        self.store.execute(CREATE_FTS_SQL, stage="index")

    def populate_fts(self) -> int:
        logger.info("Populating FTS5 index from %s", ADDRESS_TABLE)
        self.store.execute(POPULATE_FTS_SQL, stage="index")
        return self.store.count()

    def finalize(self) -> None:
        """Leave a single self-contained file that read-only openers can use without sidecars."""
        try:
            mode = finalize_journal(self.store.conn)
        except sqlite3.Error as exc:
            raise StoreError("index", f"cannot leave WAL journaling: {exc}") from exc
        logger.info("Store journal mode is now %s", mode)

    def _step(self, report: IndexBuildReport, name: str, action: Callable[[], int | None]) -> int:
        started = self._clock()
        result = action()
        report.step_seconds[name] = self._clock() - started
        return result or 0
