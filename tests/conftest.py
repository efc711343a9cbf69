"""Shared test fixtures and configuration."""

from __future__ import annotations

from collections.abc import Callable
import os
from pathlib import Path
from typing import Any

import orjson
import pytest

from geo_address_store.config import Settings
from geo_address_store.domain.model import AddressRecord
from geo_address_store.storage.address_store import AddressStore
from geo_address_store.storage.index_builder import IndexBuilder


class FakeClock:
    """Monotonic clock that only moves when a test says so."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep GEO_ADDRESS_* variables from the developer shell out of Settings."""
    for key in list(os.environ):
        if key.startswith("GEO_ADDRESS_"):
            monkeypatch.delenv(key)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings rooted in ``tmp_path`` with small, test-friendly store tuning."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "input_path": tmp_path / "addresses.geojson",
            "db_path": tmp_path / "addresses.db",
            "estimated_total_records": 1000,
            "cache_size_kb": -2000,
            "mmap_size_bytes": 0,
            "busy_retry_backoff_seconds": 0,
            "log_json": False,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def address_feature() -> Callable[..., dict[str, Any]]:
    """Build a GeoJSON Point feature with ``addr:*`` properties."""

    def _feature(
        street: str | None = "Hauptstraße",
        house_number: str | None = "1",
        city: str | None = "Berlin",
        *,
        lon: float = 13.0,
        lat: float = 52.0,
        **extra: Any,
    ) -> dict[str, Any]:
        properties: dict[str, Any] = dict(extra)
        if street is not None:
            properties["addr:street"] = street
        if house_number is not None:
            properties["addr:housenumber"] = house_number
        if city is not None:
            properties["addr:city"] = city
        return {
            "type": "Feature",
            "properties": properties,
            "geometry": {"type": "Point", "coordinates": [lon, lat]},
        }

    return _feature


@pytest.fixture
def write_geojson(tmp_path: Path) -> Callable[..., Path]:
    """Write a FeatureCollection; extra keyword members are placed before ``features``."""

    def _write(features: list[Any], *, name: str = "addresses.geojson", **members: Any) -> Path:
        path = tmp_path / name
        document = {"type": "FeatureCollection", **members, "features": features}
        path.write_bytes(orjson.dumps(document))
        return path

    return _write


@pytest.fixture
def sample_records() -> list[AddressRecord]:
    return [
        AddressRecord(street="Hauptstraße", house_number="1", city="Nürnberg", lon=11.07, lat=49.45),
        AddressRecord(street="Hauptstraße", house_number="2", city="Fürth", lon=10.98, lat=49.47),
        AddressRecord(street="Haupt-Straße", house_number="5", city="Erlangen", lon=11.0, lat=49.6),
        AddressRecord(street="Bahnhofstraße", house_number="12a", city="Nürnberg", lon=11.08, lat=49.44),
    ]


@pytest.fixture
def indexed_store(make_settings, sample_records) -> Settings:
    """A finished store holding ``sample_records`` with its full-text index built."""
    settings = make_settings()
    with AddressStore.create(settings) as store:
        store.begin()
        store.insert_records(sample_records, chunk_size=settings.insert_chunk_size)
        store.commit()
        IndexBuilder(store).build()
    return settings
