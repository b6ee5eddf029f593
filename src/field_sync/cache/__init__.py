"""Generation-tagged response cache and the strategy router in front of it."""

from field_sync.cache.router import ResourceClass, ResourceClassifier, StrategyRouter
from field_sync.cache.store import CacheStats, CacheStore

__all__ = ["CacheStats", "CacheStore", "ResourceClass", "ResourceClassifier", "StrategyRouter"]
