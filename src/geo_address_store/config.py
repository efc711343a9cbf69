"""Centralized configuration for geo-address-store using Pydantic Settings.

A ``Settings`` instance is built once by the caller and passed explicitly to
every component; nothing in the package reads environment variables on its
own, so several pipelines can run side by side in one process.
"""

from pathlib import Path
from typing import Annotated, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SOURCE_URL = "https://download.geofabrik.de/europe/germany/mittelfranken-latest.osm.pbf"

# Five bound parameters per row; SQLite 3.32+ allows 32766 per statement.
MAX_INSERT_CHUNK_SIZE = 6000


class CollectorConfig(BaseModel):
    """OTLP collector settings for trace and metric export."""

    model_config = {"extra": "forbid"}

    enabled: bool = False
    collector_endpoint: Annotated[str, Field(description="OTLP endpoint, e.g. http://localhost:4317")] = (
        "http://localhost:4317"
    )
    otlp_protocol: Literal["grpc", "http"] = "grpc"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Annotated[int, Field(ge=1, le=120)] = 10
    grpc_insecure: bool = True
    resource_attributes: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Strictly typed configuration for one import/search pipeline.

    Values come from constructor arguments first, then ``GEO_ADDRESS_*``
    environment variables and an optional ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="GEO_ADDRESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Locations
    input_path: Path | None = Field(default=None, description="GeoJSON feature collection to import")
    db_path: Path | None = Field(
        default=None, description="SQLite store; derived from input_path or source_url when unset"
    )
    source_url: str = Field(default=DEFAULT_SOURCE_URL, description="Where the raw OSM extract was downloaded from")
    overwrite: bool = Field(default=True, description="Remove an existing store before importing")

    # Batch windowing
    batch_max_records: int = Field(default=500_000, ge=1, description="Flush once this many records are buffered")
    batch_max_seconds: float = Field(
        default=5.0, gt=0, description="Flush once the open transaction is older than this"
    )
    insert_chunk_size: int = Field(
        default=500, ge=1, le=MAX_INSERT_CHUNK_SIZE, description="Rows per multi-row INSERT statement"
    )
    estimated_total_records: int = Field(
        default=33_000_000, ge=0, description="Rough record count used only for progress projection"
    )
    read_chunk_size: int = Field(default=65_536, ge=1024, description="Characters read per decoder refill")

    # Extraction
    reject_null_island: bool = Field(
        default=True, description="Exclude features whose representative coordinate is exactly (0, 0)"
    )

    # Store tuning
    cache_size_kb: int = Field(default=-2_000_000, description="PRAGMA cache_size (negative means KiB)")
    mmap_size_bytes: int = Field(default=30_000_000_000, ge=0, description="PRAGMA mmap_size")
    page_size: int = Field(default=16_384, ge=512, le=65_536, description="PRAGMA page_size for new stores")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="PRAGMA busy_timeout")
    busy_retry_attempts: int = Field(default=3, ge=0, description="Retries for BEGIN/COMMIT on a busy store")
    busy_retry_backoff_seconds: float = Field(default=0.05, ge=0, description="Initial retry backoff, doubled per try")

    # Search
    search_limit: int = Field(default=5, ge=1, le=1000, description="Maximum ranked results per query")
    highlight_open: str = Field(default="<b>", description="Marker inserted before a matched token")
    highlight_close: str = Field(default="</b>", description="Marker inserted after a matched token")

    # Observability
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")
    service_name: str = Field(default="geo-address-store", description="OpenTelemetry service.name")
    collector: CollectorConfig = Field(default_factory=CollectorConfig)

    @model_validator(mode="after")
    def _derive_db_path(self) -> "Settings":
        if self.db_path is None:
            self.db_path = derive_db_path(self.input_path, self.source_url)
        return self

    def require_input_path(self) -> Path:
        if self.input_path is None:
            raise ValueError("input_path must be set to run an import")
        return self.input_path

    def require_db_path(self) -> Path:
        if self.db_path is None:
            raise ValueError("db_path could not be derived; set it explicitly")
        return self.db_path


def derive_db_path(input_path: Path | None, source_url: str) -> Path | None:
    """Name the store after the input file, or after the downloaded extract.

    ``mittelfranken-latest.osm.pbf`` becomes ``mittelfranken-latest.osm.db``.
    """
    if input_path is not None:
        return input_path.with_suffix(".db")
    file_name = Path(urlparse(source_url).path).name
    if not file_name:
        return None
    stem, dot, _ = file_name.rpartition(".")
    return Path((stem if dot else file_name) + ".db")
