"""
Cache module: bounded LRU + TTL cache in front of the cold store.
"""

from billvault.cache.cold_cache import CacheEntry, CacheStats, ColdReadCache

__all__ = [
    "CacheEntry",
    "CacheStats",
    "ColdReadCache",
]
