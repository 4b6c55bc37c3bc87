"""
Library cache management.

This package handles:
1. Deriving path-safe cache keys from library requests
2. Reusing Ready cache entries
3. Exclusive, crash-safe population of missing entries across processes
4. Reclaiming poisoned entries and explicit eviction
"""

from .cache_key import CacheKey, cache_key
from .cache_manager import (
    CacheEntry,
    CacheEntryState,
    CacheManager,
    ExclusiveSlotHandle,
    ReadyEntry,
)

__all__ = [
    "CacheEntry",
    "CacheEntryState",
    "CacheKey",
    "CacheManager",
    "ExclusiveSlotHandle",
    "ReadyEntry",
    "cache_key",
]
