"""Ranked full-text address search over a finished store.

The store is opened read-only; a search never writes and never needs the
writer's exclusive lock. Free text is turned into a conservative FTS5
expression (every term quoted) so user input can never be parsed as FTS5
query syntax.
"""

from __future__ import annotations

import logging
from pathlib import Path
import sqlite3

from geo_address_store.config import Settings
from geo_address_store.domain.errors import StoreError
from geo_address_store.domain.model import AddressRecord
from geo_address_store.domain.search import SearchHit
from geo_address_store.observability.metrics import SEARCH_LATENCY, track_latency
from geo_address_store.storage.address_store import ADDRESS_TABLE
from geo_address_store.storage.index_builder import FTS_TABLE
from geo_address_store.storage.sqlite_pragmas import apply_read_pragmas


logger = logging.getLogger(__name__)

PREFIX_MARKER = "*"

SEARCH_SQL = f"""
    SELECT a.id, a.street, a.house_number, a.city, a.longitude, a.latitude,
           highlight({FTS_TABLE}, 0, :open, :close),
           highlight({FTS_TABLE}, 1, :open, :close),
           highlight({FTS_TABLE}, 2, :open, :close),
           {FTS_TABLE}.rank
    FROM {FTS_TABLE}
    JOIN {ADDRESS_TABLE} AS a ON a.id = {FTS_TABLE}.rowid
    WHERE {FTS_TABLE} MATCH :expression
    ORDER BY {FTS_TABLE}.rank
    LIMIT :limit
"""


def _quote_term(term: str) -> str:
    return '"' + term.replace('"', '""') + '"'


def build_match_expression(query_text: str) -> str | None:
    """Translate free text into an FTS5 MATCH expression.

    Terms are split on whitespace and implicitly ANDed. Each term becomes a
    quoted string, so characters such as ``-``, ``:`` or ``(`` are literal;
    a trailing ``*`` turns the term into a prefix query. Terms without any
    letter or digit are dropped. Returns ``None`` when nothing searchable
    remains.
    """
    parts: list[str] = []
    for raw_term in query_text.split():
        term = raw_term.rstrip(PREFIX_MARKER)
        if not any(char.isalnum() for char in term):
            continue
        quoted = _quote_term(term)
        parts.append(quoted + PREFIX_MARKER if raw_term.endswith(PREFIX_MARKER) else quoted)
    if not parts:
        return None
    return " ".join(parts)


def _check_limit(limit: int | None) -> None:
    if limit is not None and limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")


class AddressSearchEngine:
    """Read-only query side of an address store."""

    def __init__(self, db_path: str | Path, settings: Settings) -> None:
        self.db_path = Path(db_path)
        self.default_limit = settings.search_limit
        self.highlight_open = settings.highlight_open
        self.highlight_close = settings.highlight_close
        self._store_label = self.db_path.name
        self.conn = self._connect(settings)

    def _connect(self, settings: Settings) -> sqlite3.Connection:
        uri = self.db_path.resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as exc:
            raise StoreError("search", f"cannot open {self.db_path} read-only: {exc}") from exc
        try:
            apply_read_pragmas(conn, busy_timeout_ms=settings.busy_timeout_ms)
        except sqlite3.Error as exc:
            conn.close()
            raise StoreError("search", f"cannot configure {self.db_path}: {exc}") from exc
        return conn

    def __enter__(self) -> AddressSearchEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def search(self, query_text: str, *, limit: int | None = None) -> list[SearchHit]:
        """Return at most ``limit`` hits ordered by FTS5 rank, best first.

        A blank query, or one with no searchable term, returns an empty list.

        Raises:
            ValueError: ``limit`` is smaller than 1.
            StoreError: the store has no full-text index or the query failed.
        """
        _check_limit(limit)
        expression = build_match_expression(query_text)
        if expression is None:
            return []
        params = {
            "open": self.highlight_open,
            "close": self.highlight_close,
            "expression": expression,
            "limit": limit if limit is not None else self.default_limit,
        }
        with track_latency(SEARCH_LATENCY, store=self._store_label):
            try:
                rows = self.conn.execute(SEARCH_SQL, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreError("search", f"query {expression!r} failed: {exc}") from exc
        logger.debug("Search %r matched %d rows", expression, len(rows))
        return [
            SearchHit(
                address_id=row[0],
                street=row[1] or "",
                house_number=row[2] or "",
                city=row[3] or "",
                lon=row[4],
                lat=row[5],
                street_highlight=row[6] or "",
                house_number_highlight=row[7] or "",
                city_highlight=row[8] or "",
                rank=row[9],
            )
            for row in rows
        ]

    def lookup(
        self,
        street: str,
        house_number: str | None = None,
        city: str | None = None,
        *,
        limit: int | None = None,
    ) -> list[AddressRecord]:
        """Exact-match lookup served by the secondary indices, ordered by id."""
        _check_limit(limit)
        clauses = ["street = ?"]
        params: list[object] = [street]
        if house_number is not None:
            clauses.append("house_number = ?")
            params.append(house_number)
        if city is not None:
            clauses.append("city = ?")
            params.append(city)
        sql = (
            f"SELECT street, house_number, city, longitude, latitude FROM {ADDRESS_TABLE} "
            f"WHERE {' AND '.join(clauses)} ORDER BY id"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError("search", f"lookup failed: {exc}") from exc
        return [AddressRecord(street=row[0], house_number=row[1], city=row[2], lon=row[3], lat=row[4]) for row in rows]

    def count(self) -> int:
        try:
            row = self.conn.execute(f"SELECT COUNT(*) FROM {ADDRESS_TABLE}").fetchone()
        except sqlite3.Error as exc:
            raise StoreError("search", str(exc)) from exc
        return int(row[0])

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as close_error:
            logger.warning("Failed to close search connection for %s: %s", self.db_path, close_error)
