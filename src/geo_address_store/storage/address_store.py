"""SQLite store for address records.

Owns the single writer connection used during an import: schema creation,
explicit transaction control with bounded retry on busy/locked conditions,
and the multi-row ``INSERT OR IGNORE`` statements issued by the batch loader.
The connection runs with ``isolation_level=None`` so that every transaction
boundary in this module is an explicit statement.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import lru_cache
import logging
from pathlib import Path
import sqlite3
import time
from typing import TypeVar

from geo_address_store.config import Settings
from geo_address_store.domain.errors import StoreError
from geo_address_store.domain.model import AddressRecord
from geo_address_store.storage.sqlite_pragmas import apply_bulk_load_pragmas


logger = logging.getLogger(__name__)

T = TypeVar("T")

ADDRESS_TABLE = "addresses"
ADDRESS_COLUMNS = ("street", "house_number", "city", "longitude", "latitude")

CREATE_ADDRESS_TABLE_SQL = f"""
    CREATE TABLE {ADDRESS_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        street TEXT,
        house_number TEXT,
        city TEXT,
        longitude REAL,
        latitude REAL,
        UNIQUE(street, house_number, city)
    )
"""

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")
_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


@lru_cache(maxsize=8)
def insert_sql(row_count: int) -> str:
    """Multi-row insert-or-ignore statement for ``row_count`` records."""
    placeholders = ",".join(["(?, ?, ?, ?, ?)"] * row_count)
    return f"INSERT OR IGNORE INTO {ADDRESS_TABLE} ({', '.join(ADDRESS_COLUMNS)}) VALUES {placeholders}"


def is_busy_error(exc: sqlite3.Error) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def retry_busy(
    stage: str,
    operation: Callable[[], T],
    *,
    attempts: int,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying busy/locked failures with exponential backoff.

    Any other SQLite error, or a busy error after ``attempts`` retries, is
    raised as a ``StoreError`` tagged with ``stage``.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except sqlite3.Error as exc:
            if not is_busy_error(exc) or attempt >= attempts:
                raise StoreError(stage, str(exc)) from exc
            delay = backoff_seconds * (2**attempt)
            attempt += 1
            logger.warning("Store busy during %s, retrying in %.3fs (attempt %d/%d)", stage, delay, attempt, attempts)
            sleep(delay)


def remove_store_files(db_path: Path) -> None:
    """Delete a store and its journal sidecar files if present."""
    for path in (db_path, *(db_path.with_name(db_path.name + suffix) for suffix in _SIDECAR_SUFFIXES)):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise StoreError("open_store", f"cannot remove existing file {path}: {exc}") from exc
        logger.info("Removed existing store file %s", path)


class AddressStore:
    """Exclusive-writer SQLite store holding the ``addresses`` relation."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        db_path: Path,
        *,
        busy_retry_attempts: int = 3,
        busy_retry_backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.conn = conn
        self.db_path = db_path
        self.busy_retry_attempts = busy_retry_attempts
        self.busy_retry_backoff_seconds = busy_retry_backoff_seconds
        self._sleep = sleep

    @classmethod
    def create(cls, settings: Settings, *, sleep: Callable[[float], None] = time.sleep) -> AddressStore:
        """Open a fresh store at ``settings.db_path`` and create the primary relation.

        Raises:
            StoreError: the file cannot be created, tuned or given its schema.
        """
        db_path = settings.require_db_path()
        if settings.overwrite:
            remove_store_files(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        def _connect() -> sqlite3.Connection:
            conn = sqlite3.connect(db_path, isolation_level=None, cached_statements=16)
            try:
                apply_bulk_load_pragmas(
                    conn,
                    page_size=settings.page_size,
                    cache_size_kb=settings.cache_size_kb,
                    mmap_size_bytes=settings.mmap_size_bytes,
                    busy_timeout_ms=settings.busy_timeout_ms,
                )
            except sqlite3.Error:
                conn.close()
                raise
            return conn

        conn = retry_busy(
            "open_store",
            _connect,
            attempts=settings.busy_retry_attempts,
            backoff_seconds=settings.busy_retry_backoff_seconds,
            sleep=sleep,
        )
        store = cls(
            conn,
            db_path,
            busy_retry_attempts=settings.busy_retry_attempts,
            busy_retry_backoff_seconds=settings.busy_retry_backoff_seconds,
            sleep=sleep,
        )
        try:
            store.execute(CREATE_ADDRESS_TABLE_SQL, stage="schema")
        except StoreError:
            store.close()
            raise
        logger.info("Created address store at %s", db_path)
        return store

    def __enter__(self) -> AddressStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def in_transaction(self) -> bool:
        return self.conn.in_transaction

    def begin(self) -> None:
        self._with_busy_retry("begin", lambda: self.conn.execute("BEGIN IMMEDIATE"))

    def commit(self) -> None:
        self._with_busy_retry("commit", lambda: self.conn.execute("COMMIT"))

    def rollback(self) -> None:
        """Discard the open transaction; a no-op when none is open."""
        if not self.conn.in_transaction:
            return
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            raise StoreError("rollback", str(exc)) from exc

    def insert_records(self, records: Sequence[AddressRecord], *, chunk_size: int) -> int:
        """Insert ``records`` in sub-batches of ``chunk_size`` rows within the open transaction.

        Rows whose natural key already exists are ignored. Returns the number of
        rows actually inserted.
        """
        before = self.conn.total_changes
        for start in range(0, len(records), chunk_size):
            chunk = records[start : start + chunk_size]
            params: list[object] = []
            for record in chunk:
                params.extend(record.as_row())
            self.conn.execute(insert_sql(len(chunk)), params)
        return self.conn.total_changes - before

    def execute(self, sql: str, *, stage: str, params: Sequence[object] = ()) -> sqlite3.Cursor:
        """Run a structural statement; failures are fatal and tagged with ``stage``."""
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(stage, f"{exc} (while running: {' '.join(sql.split())[:120]})") from exc

    def count(self) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) FROM {ADDRESS_TABLE}").fetchone()
        return int(row[0])

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as close_error:
            logger.warning("Failed to close SQLite connection for %s: %s", self.db_path, close_error)

    def _with_busy_retry(self, stage: str, operation: Callable[[], T]) -> T:
        return retry_busy(
            stage,
            operation,
            attempts=self.busy_retry_attempts,
            backoff_seconds=self.busy_retry_backoff_seconds,
            sleep=self._sleep,
        )
