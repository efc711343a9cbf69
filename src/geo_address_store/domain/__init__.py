"""Domain layer - features, address records, import progress and search hits.

Nothing here touches SQLite or the filesystem; storage and ingestion modules
depend on these types, never the other way round.
"""

from geo_address_store.domain.errors import (
    AddressStoreError,
    ImportInterrupted,
    InputError,
    PipelineError,
    StoreError,
)
from geo_address_store.domain.import_progress import (
    FlushReport,
    ImportPhase,
    ImportProgress,
    ImportReport,
    ImportStats,
    InvalidPhaseTransitionError,
)
from geo_address_store.domain.model import (
    AddressRecord,
    Coordinate,
    DecodedFeature,
    ExtractionResult,
    ExtractionStatus,
    Feature,
    GeometryType,
    SkipReason,
    normalize_property,
)
from geo_address_store.domain.search import SearchHit


__all__ = [
    "AddressRecord",
    "AddressStoreError",
    "Coordinate",
    "DecodedFeature",
    "ExtractionResult",
    "ExtractionStatus",
    "Feature",
    "FlushReport",
    "GeometryType",
    "ImportInterrupted",
    "ImportPhase",
    "ImportProgress",
    "ImportReport",
    "ImportStats",
    "InputError",
    "InvalidPhaseTransitionError",
    "PipelineError",
    "SearchHit",
    "SkipReason",
    "StoreError",
    "normalize_property",
]
