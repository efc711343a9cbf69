"""Process runtime helpers."""

from geo_address_store.runtime.signals import install_shutdown_signals


__all__ = ["install_shutdown_signals"]
