"""Read-side full-text search over a finished address store."""

from geo_address_store.search.address_search import AddressSearchEngine, build_match_expression


__all__ = ["AddressSearchEngine", "build_match_expression"]
