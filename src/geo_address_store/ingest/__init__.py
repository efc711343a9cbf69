"""Ingestion: streaming GeoJSON decoding and address extraction."""

from geo_address_store.ingest.extractor import AddressExtractor, PropertyKeys, representative_coordinate
from geo_address_store.ingest.stream_decoder import iter_features, open_features


__all__ = [
    "AddressExtractor",
    "PropertyKeys",
    "iter_features",
    "open_features",
    "representative_coordinate",
]
