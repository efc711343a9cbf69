"""Domain model - features, address records and per-feature outcomes.

Features and records are created once per input element, so they are plain
slotted dataclasses rather than validated models. The property bag of a
feature is a typed scalar mapping; ``normalize_property`` is the single place
that turns one of those scalars into the canonical string stored in the
``addresses`` table.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeAlias

import orjson


PropertyValue: TypeAlias = str | int | float | bool | None

# Integral floats below this magnitude print without an exponent or fraction.
_INTEGRAL_FLOAT_LIMIT = 1e21


def normalize_property(value: Any) -> str:
    """Return the canonical string form of a property value.

    ``None`` becomes ``""``, booleans use the JSON spelling, integral floats
    drop their fractional part and other floats use the shortest round-trip
    representation. Containers are serialized as compact, key-sorted JSON.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer() and abs(value) < _INTEGRAL_FLOAT_LIMIT:
            return str(int(value))
        return repr(value)
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS).decode("utf-8")


class GeometryType(str, Enum):
    """Geometry types with a representative vertex convention."""

    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"
    MULTI_POLYGON = "MultiPolygon"

    @property
    def nesting_depth(self) -> int:
        """Number of list levels wrapping the first ``[lon, lat]`` pair."""
        return _NESTING_DEPTH[self]

    @classmethod
    def parse(cls, raw: object) -> GeometryType | None:
        try:
            return cls(raw)
        except ValueError:
            return None


_NESTING_DEPTH = {
    GeometryType.POINT: 0,
    GeometryType.LINE_STRING: 1,
    GeometryType.POLYGON: 2,
    GeometryType.MULTI_POLYGON: 3,
}


@dataclass(slots=True, frozen=True)
class Coordinate:
    """A longitude/latitude pair."""

    lon: float
    lat: float

    @property
    def is_null_island(self) -> bool:
        return self.lon == 0 and self.lat == 0


@dataclass(slots=True)
class Feature:
    """One GeoJSON feature reduced to what address extraction needs."""

    geometry_type: str
    coordinates: Any
    properties: dict[str, PropertyValue] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Feature:
        """Build a feature from a decoded GeoJSON object.

        Missing or null ``geometry``/``properties`` members are tolerated and
        leave the feature with an empty geometry type or property bag.
        """
        geometry = raw.get("geometry")
        if not isinstance(geometry, Mapping):
            geometry = {}
        geometry_type = geometry.get("type")
        properties = raw.get("properties")
        if not isinstance(properties, Mapping):
            properties = {}
        return cls(
            geometry_type=geometry_type if isinstance(geometry_type, str) else "",
            coordinates=geometry.get("coordinates"),
            properties={str(key): _as_property_value(value) for key, value in properties.items()},
        )

    def has(self, key: str) -> bool:
        return key in self.properties

    def text(self, key: str) -> str:
        """Normalized string for ``key``; missing keys read as ``""``."""
        return normalize_property(self.properties.get(key))


def _as_property_value(value: Any) -> PropertyValue:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    # Nested values are not expected in address tags; keep their JSON text.
    return normalize_property(value)


@dataclass(slots=True, frozen=True)
class AddressRecord:
    """An address ready for insertion; ``(street, house_number, city)`` is its natural key."""

    street: str
    house_number: str
    city: str
    lon: float
    lat: float

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.street, self.house_number, self.city)

    def as_row(self) -> tuple[str, str, str, float, float]:
        return (self.street, self.house_number, self.city, self.lon, self.lat)


class ExtractionStatus(str, Enum):
    """Outcome of turning one input element into an address record."""

    ACCEPTED = "accepted"
    EXCLUDED = "excluded"
    MALFORMED = "malformed"


class SkipReason(str, Enum):
    """Why a feature did not produce a record."""

    MISSING_STREET = "missing_street"
    UNSUPPORTED_GEOMETRY = "unsupported_geometry"
    MISSING_COORDINATE = "missing_coordinate"
    NULL_ISLAND = "null_island"
    MALFORMED_JSON = "malformed_json"
    NOT_AN_OBJECT = "not_an_object"


@dataclass(slots=True, frozen=True)
class ExtractionResult:
    """Explicit per-feature result so skips can be counted instead of dropped."""

    status: ExtractionStatus
    record: AddressRecord | None = None
    reason: SkipReason | None = None

    @classmethod
    def accepted(cls, record: AddressRecord) -> ExtractionResult:
        return cls(ExtractionStatus.ACCEPTED, record=record)

    @classmethod
    def excluded(cls, reason: SkipReason) -> ExtractionResult:
        return cls(ExtractionStatus.EXCLUDED, reason=reason)

    @classmethod
    def malformed(cls, reason: SkipReason) -> ExtractionResult:
        return cls(ExtractionStatus.MALFORMED, reason=reason)


@dataclass(slots=True, frozen=True)
class DecodedFeature:
    """One element of the ``features`` array: a feature, or the reason it could not be read."""

    ordinal: int
    feature: Feature | None = None
    error: SkipReason | None = None

    @property
    def ok(self) -> bool:
        return self.feature is not None
