"""Domain model for import progress accounting.

``ImportProgress`` is the mutable aggregate updated once per feature and once
per flush. ``ImportStats``, ``FlushReport`` and ``ImportReport`` are the
immutable snapshots handed to logging, metrics and callers.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from geo_address_store.domain.model import ExtractionResult, ExtractionStatus


class InvalidPhaseTransitionError(Exception):
    """Raised when an import moves out of a terminal phase."""


class ImportPhase(str, Enum):
    """Phases of an import run."""

    INITIALIZING = "initializing"
    LOADING = "loading"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in {ImportPhase.COMPLETED, ImportPhase.FAILED}


@dataclass(slots=True, frozen=True)
class ImportStats:
    """Aggregate counters of an import run."""

    features_seen: int = 0
    records_accepted: int = 0
    records_flushed: int = 0
    rows_inserted: int = 0
    flushes: int = 0
    excluded: dict[str, int] = field(default_factory=dict)
    malformed: dict[str, int] = field(default_factory=dict)

    @property
    def features_excluded(self) -> int:
        return sum(self.excluded.values())

    @property
    def features_malformed(self) -> int:
        return sum(self.malformed.values())

    @property
    def duplicates_absorbed(self) -> int:
        return self.records_flushed - self.rows_inserted

    def to_dict(self) -> dict[str, Any]:
        return {
            "features_seen": self.features_seen,
            "records_accepted": self.records_accepted,
            "records_flushed": self.records_flushed,
            "rows_inserted": self.rows_inserted,
            "flushes": self.flushes,
            "excluded": dict(self.excluded),
            "malformed": dict(self.malformed),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImportStats:
        return cls(
            features_seen=int(data.get("features_seen", 0)),
            records_accepted=int(data.get("records_accepted", 0)),
            records_flushed=int(data.get("records_flushed", 0)),
            rows_inserted=int(data.get("rows_inserted", 0)),
            flushes=int(data.get("flushes", 0)),
            excluded={str(k): int(v) for k, v in data.get("excluded", {}).items()},
            malformed={str(k): int(v) for k, v in data.get("malformed", {}).items()},
        )


@dataclass(slots=True, frozen=True)
class FlushReport:
    """Telemetry for one committed batch window. Advisory only."""

    sequence: int
    records: int
    rows_inserted: int
    duration_seconds: float
    records_per_second: float
    total_flushed: int
    percent_complete: float
    remaining_seconds: float | None

    def describe(self) -> str:
        remaining = (
            f"{self.remaining_seconds / 60:.1f} minutes remaining"
            if self.remaining_seconds is not None
            else "estimating..."
        )
        return (
            f"Processed {self.total_flushed} addresses "
            f"({self.records_per_second:.1f}/s, {self.percent_complete:.1f}%, {remaining})"
        )


@dataclass(slots=True, frozen=True)
class ImportReport:
    """Final outcome of an import run."""

    phase: ImportPhase
    stats: ImportStats
    elapsed_seconds: float
    indexed_rows: int = 0

    @property
    def records_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.stats.records_flushed / self.elapsed_seconds


@dataclass
class ImportProgress:
    """Aggregate root for one import run."""

    estimated_total_records: int
    started_monotonic: float
    phase: ImportPhase = ImportPhase.INITIALIZING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    failure_reason: str | None = None
    features_seen: int = 0
    records_accepted: int = 0
    records_flushed: int = 0
    rows_inserted: int = 0
    flushes: int = 0
    excluded: Counter[str] = field(default_factory=Counter)
    malformed: Counter[str] = field(default_factory=Counter)
    last_flush_monotonic: float | None = None

    def record_result(self, result: ExtractionResult) -> None:
        self.features_seen += 1
        if result.status is ExtractionStatus.ACCEPTED:
            self.records_accepted += 1
        elif result.status is ExtractionStatus.EXCLUDED:
            self.excluded[result.reason.value] += 1
        else:
            self.malformed[result.reason.value] += 1

    def record_flush(self, *, records: int, rows_inserted: int, duration: float, now: float) -> FlushReport:
        """Account for a committed flush and project the remaining time."""
        previous = self.last_flush_monotonic if self.last_flush_monotonic is not None else self.started_monotonic
        elapsed = now - previous
        records_per_second = records / elapsed if elapsed > 0 else 0.0
        self.last_flush_monotonic = now
        self.flushes += 1
        self.records_flushed += records
        self.rows_inserted += rows_inserted

        remaining_seconds: float | None = None
        if records_per_second > 0:
            remaining_records = max(self.estimated_total_records - self.records_flushed, 0)
            remaining_seconds = remaining_records / records_per_second
        percent = (
            self.records_flushed / self.estimated_total_records * 100 if self.estimated_total_records > 0 else 0.0
        )
        return FlushReport(
            sequence=self.flushes,
            records=records,
            rows_inserted=rows_inserted,
            duration_seconds=duration,
            records_per_second=records_per_second,
            total_flushed=self.records_flushed,
            percent_complete=percent,
            remaining_seconds=remaining_seconds,
        )

    @property
    def stats(self) -> ImportStats:
        return ImportStats(
            features_seen=self.features_seen,
            records_accepted=self.records_accepted,
            records_flushed=self.records_flushed,
            rows_inserted=self.rows_inserted,
            flushes=self.flushes,
            excluded=dict(self.excluded),
            malformed=dict(self.malformed),
        )

    def start_loading(self) -> None:
        self._transition_to(ImportPhase.LOADING)

    def start_indexing(self) -> None:
        self._transition_to(ImportPhase.INDEXING)

    def mark_completed(self) -> None:
        self._transition_to(ImportPhase.COMPLETED)

    def mark_interrupted(self) -> None:
        self._transition_to(ImportPhase.INTERRUPTED)

    def mark_failed(self, *, error: str) -> None:
        self.failure_reason = error
        self._transition_to(ImportPhase.FAILED)

    def report(self, *, now: float, indexed_rows: int = 0) -> ImportReport:
        return ImportReport(
            phase=self.phase,
            stats=self.stats,
            elapsed_seconds=now - self.started_monotonic,
            indexed_rows=indexed_rows,
        )

    def _transition_to(self, new_phase: ImportPhase) -> None:
        if self.phase == new_phase:
            return
        if self.phase.is_terminal:
            raise InvalidPhaseTransitionError(f"Cannot transition from terminal phase {self.phase} to {new_phase}")
        self.phase = new_phase
