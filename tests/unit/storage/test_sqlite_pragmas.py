"""Tests for the store PRAGMA sets."""

import sqlite3

import pytest

from geo_address_store.storage.sqlite_pragmas import (
    apply_bulk_load_pragmas,
    apply_pragmas,
    apply_read_pragmas,
    finalize_journal,
    search_pragmas,
)


def _pragma(conn: sqlite3.Connection, name: str):
    return conn.execute(f"PRAGMA {name}").fetchone()[0]


@pytest.mark.unit
class TestSqlitePragmas:
    def test_pragmas_run_in_order(self):
        executed = []

        class _Recorder:
            def execute(self, sql):
                executed.append(sql)

        apply_pragmas(_Recorder(), [("page_size", 4096), ("journal_mode", "WAL")])

        assert executed == ["PRAGMA page_size = 4096", "PRAGMA journal_mode = WAL"]

    def test_bulk_load_settings_on_fresh_file(self, tmp_path):
        conn = sqlite3.connect(tmp_path / "bulk.db", isolation_level=None)
        try:
            apply_bulk_load_pragmas(conn, page_size=8192, cache_size_kb=-1000, mmap_size_bytes=0, busy_timeout_ms=250)

            assert _pragma(conn, "page_size") == 8192
            assert _pragma(conn, "journal_mode") == "wal"
            assert _pragma(conn, "synchronous") == 1
            assert _pragma(conn, "busy_timeout") == 250
            assert _pragma(conn, "locking_mode") == "exclusive"
        finally:
            conn.close()

    def test_search_settings_make_connection_query_only(self, tmp_path):
        conn = sqlite3.connect(tmp_path / "read.db", isolation_level=None)
        try:
            conn.execute("CREATE TABLE t (x INTEGER)")
            apply_read_pragmas(conn, busy_timeout_ms=100)

            assert _pragma(conn, "query_only") == 1
            with pytest.raises(sqlite3.OperationalError, match="readonly"):
                conn.execute("INSERT INTO t VALUES (1)")
        finally:
            conn.close()

    def test_search_pragmas_start_with_busy_timeout(self):
        assert search_pragmas(busy_timeout_ms=42)[0] == ("busy_timeout", 42)

    def test_finalize_journal_leaves_wal(self, tmp_path):
        conn = sqlite3.connect(tmp_path / "final.db", isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("CREATE TABLE t (x INTEGER)")

            assert finalize_journal(conn) == "delete"
            assert not (tmp_path / "final.db-wal").exists()
        finally:
            conn.close()
