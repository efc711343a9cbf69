"""PRAGMA sets for the two ways an address store is opened.

The importer holds the only connection while it loads, so it takes the file
exclusively and trades memory for speed. Searches open the finished file
read-only and must never change it.
"""

from __future__ import annotations

from collections.abc import Iterable
import sqlite3


Pragma = tuple[str, object]


def bulk_load_pragmas(
    *,
    page_size: int = 16_384,
    cache_size_kb: int = -2_000_000,
    mmap_size_bytes: int = 30_000_000_000,
    busy_timeout_ms: int = 5000,
) -> list[Pragma]:
    # page_size and auto_vacuum are fixed once the first table exists.
    return [
        ("busy_timeout", busy_timeout_ms),
        ("page_size", page_size),
        ("auto_vacuum", "NONE"),
        ("locking_mode", "EXCLUSIVE"),
        ("journal_mode", "WAL"),
        ("synchronous", "NORMAL"),
        ("foreign_keys", "OFF"),
        ("temp_store", "MEMORY"),
        ("cache_size", cache_size_kb),
        ("mmap_size", mmap_size_bytes),
    ]


def search_pragmas(
    *, busy_timeout_ms: int = 5000, cache_size_kb: int = -65_536, mmap_size_bytes: int = 268_435_456
) -> list[Pragma]:
    return [
        ("busy_timeout", busy_timeout_ms),
        ("query_only", 1),
        ("temp_store", "MEMORY"),
        ("cache_size", cache_size_kb),
        ("mmap_size", mmap_size_bytes),
    ]


def apply_pragmas(conn: sqlite3.Connection, pragmas: Iterable[Pragma]) -> None:
    """Run ``PRAGMA name = value`` for each pair, in order."""
    for name, value in pragmas:
        conn.execute(f"PRAGMA {name} = {value}")


def apply_bulk_load_pragmas(conn: sqlite3.Connection, **settings: int) -> None:
    """Tune a freshly created store for a single-writer bulk import.

    WAL with ``synchronous = NORMAL`` keeps every committed batch across a
    process crash without an fsync per statement. Must run right after
    connecting, before any table is created.
    """
    apply_pragmas(conn, bulk_load_pragmas(**settings))


def apply_read_pragmas(conn: sqlite3.Connection, **settings: int) -> None:
    apply_pragmas(conn, search_pragmas(**settings))


def finalize_journal(conn: sqlite3.Connection) -> str:
    """Fold the WAL back into the main file and return the resulting journal mode.

    A store left in WAL mode cannot be opened with ``mode=ro`` unless its
    ``-shm`` file can be created, so finished stores use a rollback journal.
    """
    return conn.execute("PRAGMA journal_mode = DELETE").fetchone()[0]
