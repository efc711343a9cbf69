"""Service layer - pipeline orchestration over ingest and storage."""

from geo_address_store.service_layer.import_service import ImportService, configure_observability, run_import


__all__ = ["ImportService", "configure_observability", "run_import"]
