"""Persistent discovery cache."""

from toolgate.store.cache import DiscoveryCache

__all__ = ["DiscoveryCache"]
