"""Routing result cache (LRU + TTL)."""

from unirouter.cache.route_cache import CacheStats, RouteCache

__all__ = ["CacheStats", "RouteCache"]
