"""Address extraction from OSM-style GeoJSON features.

A feature becomes a record only when it carries a street tag and a usable
representative vertex. The city falls back through town and village tags.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any

from geo_address_store.domain.model import (
    AddressRecord,
    Coordinate,
    ExtractionResult,
    Feature,
    GeometryType,
    SkipReason,
)


@dataclass(slots=True, frozen=True)
class PropertyKeys:
    """Property names consulted for each address part."""

    street: str = "addr:street"
    house_number: str = "addr:housenumber"
    city_fallbacks: tuple[str, ...] = ("addr:city", "addr:town", "addr:village")


def representative_coordinate(geometry_type: str, coordinates: Any) -> Coordinate | None:
    """Return the fixed vertex standing in for the whole geometry.

    Point: the point. LineString: first vertex. Polygon: first vertex of the
    outer ring. MultiPolygon: first vertex of the outer ring of the first
    polygon. Returns ``None`` when the payload is too shallow, empty or not
    numeric.
    """
    kind = GeometryType.parse(geometry_type)
    if kind is None:
        return None
    node = coordinates
    for _ in range(kind.nesting_depth):
        if not isinstance(node, list) or not node:
            return None
        node = node[0]
    if not isinstance(node, list) or len(node) < 2:
        return None
    lon, lat = node[0], node[1]
    if not _is_number(lon) or not _is_number(lat):
        return None
    return Coordinate(lon=float(lon), lat=float(lat))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class AddressExtractor:
    """Maps a feature to at most one ``AddressRecord``."""

    def __init__(self, *, keys: PropertyKeys | None = None, reject_null_island: bool = True) -> None:
        self.keys = keys or PropertyKeys()
        self.reject_null_island = reject_null_island

    def resolve_city(self, feature: Feature) -> str:
        for key in self.keys.city_fallbacks:
            if feature.has(key):
                return feature.text(key)
        return ""

    def extract(self, feature: Feature) -> ExtractionResult:
        if not feature.has(self.keys.street):
            return ExtractionResult.excluded(SkipReason.MISSING_STREET)

        if GeometryType.parse(feature.geometry_type) is None:
            return ExtractionResult.excluded(SkipReason.UNSUPPORTED_GEOMETRY)
        coordinate = representative_coordinate(feature.geometry_type, feature.coordinates)
        if coordinate is None:
            return ExtractionResult.excluded(SkipReason.MISSING_COORDINATE)
        if self.reject_null_island and coordinate.is_null_island:
            return ExtractionResult.excluded(SkipReason.NULL_ISLAND)

        return ExtractionResult.accepted(
            AddressRecord(
                street=feature.text(self.keys.street),
                house_number=feature.text(self.keys.house_number),
                city=self.resolve_city(feature),
                lon=coordinate.lon,
                lat=coordinate.lat,
            )
        )
