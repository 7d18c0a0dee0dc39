"""
Model-level cache-aside wrappers for repositories.

``CacheableRepository`` delegates to a repository and serves selected
single-record lookups through :meth:`CacheManager.get_or_fetch`.
``AutoClearRepository`` also registers post-write hooks on the repository
so writes invalidate the affected entries.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from shared.logging import get_logger
from .cache_manager import CacheManager, escape_glob
from .policy import CachePrefix, CacheTTL, policy_for
from ..persistence.repository import Op, Repository, RepositoryEvent

# Operators whose results cannot be keyed safely from the criteria alone.
COMPLEX_OPERATORS = frozenset({
    Op.OR, Op.AND, Op.NOT, Op.NOT_IN,
    Op.LIKE, Op.NOT_LIKE, Op.REGEXP, Op.NOT_REGEXP,
    Op.BETWEEN, Op.NOT_BETWEEN,
})

DEFAULT_CACHED_METHODS = ("find_by_pk", "find_one")


@dataclass(frozen=True)
class ModelCacheOptions:
    """Cache settings for one wrapped repository."""

    prefix: CachePrefix = CachePrefix.USER
    ttl: int = CacheTTL.MEDIUM
    methods: Tuple[str, ...] = DEFAULT_CACHED_METHODS
    disable_cache: bool = False

    @classmethod
    def for_entity(cls, entity: str, **overrides) -> "ModelCacheOptions":
        """Options taken from the policy table entry of ``entity``."""
        policy = policy_for(entity)
        values = {"prefix": policy.prefix, "ttl": policy.ttl}
        values.update(overrides)
        return cls(**values)


def contains_complex_operators(where: Any) -> bool:
    """Whether ``where`` uses a complex operator at any nesting level."""
    if isinstance(where, dict):
        return any(
            key in COMPLEX_OPERATORS or contains_complex_operators(value)
            for key, value in where.items()
        )
    if isinstance(where, (list, tuple)):
        return any(contains_complex_operators(item) for item in where)
    return False


def stable_hash(value: Any) -> str:
    """Order-independent digest of JSON-like criteria."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()


class CacheableRepository:
    """Repository wrapper adding cache-aside reads.

    Attributes that are not wrapped are delegated to the underlying
    repository unchanged, so the wrapper can stand in for it anywhere.
    """

    def __init__(self, repository: Repository, cache_manager: CacheManager,
                 options: Optional[ModelCacheOptions] = None):
        self._repository = repository
        self.cache_manager = cache_manager
        self.options = options or ModelCacheOptions()
        self.model_name = repository.model_name
        self.logger = get_logger("gateway.model_cache")

        for method in self.options.methods:
            if not callable(getattr(repository, method, None)):
                raise AttributeError(f"{self.model_name} repository has no method '{method}' to cache")

    @property
    def repository(self) -> Repository:
        return self._repository

    def __getattr__(self, name: str) -> Any:
        if name in ("_repository", "options"):
            raise AttributeError(name)
        attribute = getattr(self._repository, name)
        if name in self.options.methods and callable(attribute):
            return self._wrap(name, attribute)
        return attribute

    def pk_key(self, pk: Any) -> str:
        return f"{self.model_name}:pk:{pk}"

    async def find_by_pk(self, pk: Any, *, disable_cache: bool = False,
                         include: Any = None, transaction: Any = None) -> Any:
        fetch = lambda: self._repository.find_by_pk(pk, include=include, transaction=transaction)  # noqa: E731

        if "find_by_pk" not in self.options.methods or self._bypass(disable_cache, include, transaction):
            return await fetch()
        return await self._cached(self.pk_key(pk), fetch)

    async def find_one(self, where: Optional[Dict[str, Any]] = None, *, disable_cache: bool = False,
                       include: Any = None, transaction: Any = None) -> Any:
        fetch = lambda: self._repository.find_one(where, include=include, transaction=transaction)  # noqa: E731

        if (
            "find_one" not in self.options.methods
            or self._bypass(disable_cache, include, transaction)
            or contains_complex_operators(where)
        ):
            return await fetch()

        key = f"{self.model_name}:one:{stable_hash(where if where else 'all')}"
        return await self._cached(key, fetch)

    async def clear_cache(self, id_or_pattern: Any = None) -> List[str]:
        """Invalidate cached lookups of this model.

        No argument clears every entry of the model. An ``int`` or ``str``
        is always a primary key, even when it contains glob characters, and
        clears that one record's entry. Any other value, such as a compiled
        regex, is passed to the cache manager as a pattern.
        """
        prefix = self.options.prefix
        try:
            if id_or_pattern is None:
                return await self.cache_manager.clear_by_pattern(prefix, f"{escape_glob(self.model_name)}:*")

            if isinstance(id_or_pattern, (int, str)) and not isinstance(id_or_pattern, bool):
                key = self.pk_key(id_or_pattern)
                removed = await self.cache_manager.delete(prefix, key)
                return [self.cache_manager.make_key(prefix, key)] if removed else []

            return await self.cache_manager.clear_by_pattern(prefix, id_or_pattern)
        except Exception as exc:
            self.logger.error("Failed to clear model cache", model=self.model_name, error=str(exc))
            return []

    def _bypass(self, disable_cache: bool, include: Any, transaction: Any) -> bool:
        return bool(self.options.disable_cache or disable_cache or include or transaction is not None)

    def _wrap(self, name: str, method: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        async def cached_method(*args, disable_cache: bool = False, **kwargs):
            fetch = lambda: method(*args, **kwargs)  # noqa: E731
            if self._bypass(disable_cache, kwargs.get("include"), kwargs.get("transaction")):
                return await fetch()
            key = f"{self.model_name}:{name}:{stable_hash([list(args), kwargs])}"
            return await self._cached(key, fetch)

        cached_method.__name__ = name
        return cached_method

    async def _cached(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        async def load() -> Any:
            return self._dump(await fetch())

        data = await self.cache_manager.get_or_fetch(self.options.prefix, key, load, self.options.ttl)
        return self._load(data)

    def _dump(self, value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        if isinstance(value, list):
            return [self._dump(item) for item in value]
        return value

    def _load(self, data: Any) -> Any:
        record_type = getattr(self._repository, "record_type", None)
        if data is None or not (isinstance(record_type, type) and issubclass(record_type, BaseModel)):
            return data
        if isinstance(data, list):
            return [record_type.model_validate(item) for item in data]
        return record_type.model_validate(data)


class AutoClearRepository(CacheableRepository):
    """Cacheable repository that invalidates entries after every write.

    Single-record writes clear that record's primary-key entry; bulk writes
    clear the whole model, since their predicate cannot be mapped back to
    individual keys. Invalidation failures are logged and never fail the write.
    """

    def __init__(self, repository: Repository, cache_manager: CacheManager,
                 options: Optional[ModelCacheOptions] = None,
                 hooks: Tuple[RepositoryEvent, ...] = tuple(RepositoryEvent)):
        super().__init__(repository, cache_manager, options)
        self.hooks = hooks
        for event in hooks:
            repository.add_hook(event, self._invalidate)

    async def _invalidate(self, event: RepositoryEvent, payload: Any) -> None:
        try:
            pk = None if event.is_bulk else self._record_pk(payload)
            if pk is None:
                cleared = await self.clear_cache()
            else:
                cleared = await self.clear_cache(pk)

            self.logger.debug(
                "Model cache invalidated",
                model=self.model_name,
                hook=event.value,
                pk=pk,
                cleared=len(cleared),
            )
        except Exception as exc:
            self.logger.error(
                "Automatic cache invalidation failed",
                model=self.model_name,
                hook=event.value,
                error=str(exc),
            )

    def _record_pk(self, record: Any) -> Any:
        pk_field = getattr(self._repository, "pk_field", "id")
        if isinstance(record, dict):
            return record.get(pk_field)
        return getattr(record, pk_field, None)
