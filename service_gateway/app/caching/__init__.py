"""
Gateway caching package.

Provides the cache layer used by the API Gateway to reduce latency and
load on the data sources: a prefix-namespaced cache manager over Redis,
route-level response caching, and cache-aside wrappers for repositories
with write-triggered invalidation. Every entry carries a TTL; invalidation
is explicit or by expiry.
"""

from .cache_manager import CacheManager
from .model_cache import AutoClearRepository, CacheableRepository, ModelCacheOptions
from .policy import CachePolicy, CachePrefix, CacheTTL, MODEL_CACHE_POLICIES, policy_for
from .route_cache import RouteCache, RouteCacheOptions, clear_route_cache
from .store import KeyValueStore, RedisStore

__all__ = [
    "AutoClearRepository",
    "CacheManager",
    "CachePolicy",
    "CachePrefix",
    "CacheTTL",
    "CacheableRepository",
    "KeyValueStore",
    "MODEL_CACHE_POLICIES",
    "ModelCacheOptions",
    "RedisStore",
    "RouteCache",
    "RouteCacheOptions",
    "clear_route_cache",
    "policy_for",
]
