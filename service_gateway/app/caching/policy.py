"""
Cache prefixes, TTL tiers and the per-entity cache policy table.

Prefixes are a closed set shared by every call site. Adding one is a code
change; passing an unknown prefix string raises instead of silently opening
a new namespace.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Union


class CachePrefix(str, Enum):
    """Namespace segment of every cache key."""

    USER = "user"
    TOKEN = "token"
    CONFIG = "config"
    API = "api"
    MERCHANT = "merchant"
    SERVICE = "service"

    @classmethod
    def coerce(cls, value: Union["CachePrefix", str]) -> "CachePrefix":
        """Return the enum member for ``value`` or raise ``ValueError``."""
        if isinstance(value, cls):
            return value
        return cls(value)


class CacheTTL(IntEnum):
    """TTL tiers in seconds."""

    SHORT = 300         # volatile lookups, e.g. user by username
    MEDIUM = 3600       # semi-stable records
    LONG = 86400        # near-static configuration


@dataclass(frozen=True)
class CachePolicy:
    """Prefix and TTL assigned to a use site."""

    prefix: CachePrefix
    ttl: CacheTTL


MODEL_CACHE_POLICIES: Dict[str, CachePolicy] = {
    "User": CachePolicy(CachePrefix.USER, CacheTTL.MEDIUM),
    "Product": CachePolicy(CachePrefix.MERCHANT, CacheTTL.MEDIUM),
    "Shop": CachePolicy(CachePrefix.MERCHANT, CacheTTL.LONG),
}

USER_BY_USERNAME = CachePolicy(CachePrefix.USER, CacheTTL.SHORT)
TOKEN_CLAIMS = CachePolicy(CachePrefix.TOKEN, CacheTTL.SHORT)
REGISTER_CONFIG = CachePolicy(CachePrefix.CONFIG, CacheTTL.MEDIUM)
ROUTE_RESPONSES = CachePolicy(CachePrefix.API, CacheTTL.MEDIUM)


def policy_for(entity: str) -> CachePolicy:
    """Look up the cache policy of a model entity."""
    try:
        return MODEL_CACHE_POLICIES[entity]
    except KeyError:
        raise KeyError(f"No cache policy registered for entity '{entity}'") from None
