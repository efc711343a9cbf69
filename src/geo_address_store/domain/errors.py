"""Error hierarchy for the address import pipeline.

Two tiers exist: fatal errors derive from ``AddressStoreError`` and abort a
run, while per-feature problems are never raised and only show up as
``ExtractionResult`` outcomes counted in ``ImportStats``.
"""

from __future__ import annotations


class AddressStoreError(Exception):
    """Base error for the address store domain."""


class InputError(AddressStoreError):
    """Raised when the feature collection cannot be opened or is not framed as expected."""


class StoreError(AddressStoreError):
    """Raised when the SQLite store rejects a structural or transactional statement."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class ImportInterrupted(AddressStoreError):
    """Raised at a flush boundary once a shutdown was requested."""

    def __init__(self, records_committed: int) -> None:
        super().__init__(f"import interrupted after {records_committed} committed records")
        self.records_committed = records_committed


class PipelineError(AddressStoreError):
    """Fatal pipeline failure tagged with the stage that failed."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"stage '{stage}' failed: {message}")
        self.stage = stage
        self.message = message
