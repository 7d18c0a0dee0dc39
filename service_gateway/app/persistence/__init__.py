"""
Persistence package for the Gateway.

Repositories expose single-record lookups and writes and emit post-write
hooks; the caching package wraps them with cache-aside behaviour.
"""

from .models import Product, RegisterConfig, Shop, User
from .repository import MemoryRepository, Op, Repository, RepositoryEvent, matches

__all__ = [
    "MemoryRepository",
    "Op",
    "Product",
    "RegisterConfig",
    "Repository",
    "RepositoryEvent",
    "Shop",
    "User",
    "matches",
]
