"""
Gateway cache manager.

Sole mediator between application code and the key-value store: builds
``prefix:identifier`` keys, serializes values as JSON, and exposes a
get-or-fetch primitive plus pattern-based invalidation. The cache is a
best-effort accelerator. Store failures are logged and degrade to a miss or
a no-op; only failures of the caller's own fetch function propagate.
"""

import asyncio
import json
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Set, Union, TYPE_CHECKING

from shared.logging import get_logger
from .policy import CachePrefix
from .store import KeyValueStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


PrefixLike = Union[CachePrefix, str]
KeyPattern = Union[str, Pattern[str]]
FetchFn = Callable[[], Awaitable[Any]]

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


def is_glob(pattern: str) -> bool:
    """Whether a pattern string should be read as a glob rather than a substring."""
    return any(char in pattern for char in "*?[")


def escape_glob(value: str) -> str:
    """Escape glob metacharacters so ``value`` matches literally in SCAN."""
    return _GLOB_SPECIALS.sub(r"\\\1", value)


class CacheManager:
    """Prefix-namespaced cache over a :class:`KeyValueStore`."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        metrics: Optional["MetricsCollector"] = None,
        enabled: bool = True,
    ):
        self.store = store
        self.metrics = metrics
        self.enabled = enabled
        self.logger = get_logger("gateway.cache_manager")

        self._pending: Set[asyncio.Future] = set()
        self._stats: Dict[str, int] = {"hits": 0, "misses": 0, "errors": 0, "writes": 0}

    def make_key(self, prefix: PrefixLike, identifier: Any) -> str:
        """Build the composite ``prefix:identifier`` key."""
        return f"{CachePrefix.coerce(prefix).value}:{identifier}"

    async def get(self, prefix: PrefixLike, identifier: Any) -> Optional[Any]:
        """Return the cached value, or ``None`` on a miss or store failure."""
        prefix = CachePrefix.coerce(prefix)
        if not self.enabled:
            return None

        key = self.make_key(prefix, identifier)
        try:
            raw = await self.store.get(key)
        except Exception as exc:
            self._record_error(prefix, "get", key, exc)
            return None

        value = self._deserialize(key, raw) if raw is not None else None
        self._record_access(prefix, hit=value is not None)
        return value

    async def set(self, prefix: PrefixLike, identifier: Any, value: Any, ttl: int) -> bool:
        """Write a value with expiry and wait for the store round trip.

        Returns ``False`` when the value could not be serialized or stored;
        the failure is logged and never raised.
        """
        ttl_seconds = self._validate_ttl(ttl)
        prefix = CachePrefix.coerce(prefix)
        if not self.enabled:
            return False

        key = self.make_key(prefix, identifier)
        try:
            payload = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            self._record_error(prefix, "serialize", key, exc)
            return False

        try:
            await self.store.set(key, payload, ttl_seconds)
        except Exception as exc:
            self._record_error(prefix, "set", key, exc)
            return False

        self._stats["writes"] += 1
        self.logger.debug("Cached value", key=key, ttl=ttl_seconds)
        return True

    def submit_set(self, prefix: PrefixLike, identifier: Any, value: Any, ttl: int) -> asyncio.Future:
        """Schedule a background write and return immediately.

        The returned task always resolves to a bool; failures are logged by
        :meth:`set`. Must be called from within a running event loop.
        """
        self._validate_ttl(ttl)
        task = asyncio.ensure_future(self.set(prefix, identifier, value, ttl))
        self._track(task)
        return task

    async def delete(self, prefix: PrefixLike, identifier: Any) -> bool:
        """Remove one entry. Deleting an absent key is not an error."""
        prefix = CachePrefix.coerce(prefix)
        key = self.make_key(prefix, identifier)
        try:
            removed = await self.store.delete(key)
        except Exception as exc:
            self._record_error(prefix, "delete", key, exc)
            return False

        if removed:
            self._record_cleared(prefix, 1)
        return bool(removed)

    async def get_or_fetch(self, prefix: PrefixLike, identifier: Any, fetch: FetchFn, ttl: int) -> Any:
        """Return the cached value, or run ``fetch`` and cache its result.

        Errors raised by ``fetch`` propagate unchanged and nothing is cached.
        A ``None`` result is returned but not cached. Concurrent misses on the
        same key each run ``fetch``; there is no single-flight lock.

        The fetch and the following write run in a tracked task awaited
        through :func:`asyncio.shield`: cancelling the caller leaves them to
        finish in the background.
        """
        ttl_seconds = self._validate_ttl(ttl)
        prefix = CachePrefix.coerce(prefix)
        if not self.enabled:
            return await fetch()

        cached = await self.get(prefix, identifier)
        if cached is not None:
            return cached

        task = asyncio.ensure_future(self._fetch_and_store(prefix, identifier, fetch, ttl_seconds))
        self._track(task)
        return await asyncio.shield(task)

    async def _fetch_and_store(self, prefix: CachePrefix, identifier: Any, fetch: FetchFn, ttl: int) -> Any:
        start = time.perf_counter()
        value = await fetch()
        self._observe_fetch(prefix, time.perf_counter() - start)

        if value is None:
            self.logger.debug("Fetch returned no value, skipping cache write", key=self.make_key(prefix, identifier))
            return None

        await self.set(prefix, identifier, value, ttl)
        return value

    async def clear_by_pattern(self, prefix: PrefixLike, pattern: KeyPattern) -> List[str]:
        """Delete every key under ``prefix`` whose identifier matches ``pattern``.

        ``pattern`` is one of:

        - a plain string, matched as a substring of the identifier;
        - a glob (contains ``*``, ``?`` or ``[``), matched against the whole identifier;
        - a compiled regular expression, searched in the identifier.

        Returns the full keys that were actually removed.
        """
        prefix = CachePrefix.coerce(prefix)
        matcher: Optional[Pattern[str]] = None

        if isinstance(pattern, re.Pattern):
            matcher = pattern
            glob = "*"
        elif is_glob(pattern):
            glob = pattern
        else:
            glob = f"*{escape_glob(pattern)}*"

        scan_pattern = f"{prefix.value}:{glob}"
        try:
            keys = await self.store.scan(scan_pattern)
        except Exception as exc:
            self._record_error(prefix, "scan", scan_pattern, exc)
            return []

        if matcher is not None:
            offset = len(prefix.value) + 1
            keys = [key for key in keys if matcher.search(key[offset:])]

        cleared: List[str] = []
        for key in keys:
            try:
                if await self.store.delete(key):
                    cleared.append(key)
            except Exception as exc:
                self._record_error(prefix, "delete", key, exc)

        self._record_cleared(prefix, len(cleared))
        self.logger.info(
            "Cleared cache pattern",
            prefix=prefix.value,
            pattern=pattern.pattern if matcher is not None else pattern,
            keys_count=len(cleared),
        )
        return cleared

    async def clear_by_type(self, prefix: PrefixLike) -> List[str]:
        """Delete every key under ``prefix``."""
        return await self.clear_by_pattern(prefix, "*")

    async def stats(self) -> Dict[str, Any]:
        """Key counts per prefix plus process-local counters."""
        summary: Dict[str, Any] = {
            "enabled": self.enabled,
            "pending_tasks": len(self._pending),
            **self._stats,
        }
        try:
            keys = {}
            for prefix in CachePrefix:
                keys[prefix.value] = len(await self.store.scan(f"{prefix.value}:*"))
        except Exception as exc:
            self.logger.error("Cache stats error", error=str(exc))
            summary["error"] = str(exc)
            return summary

        summary["keys"] = keys
        summary["total_keys"] = sum(keys.values())
        return summary

    async def drain(self) -> None:
        """Wait for every background fetch and write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _track(self, task: asyncio.Future) -> None:
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # fetch errors are re-raised to the awaiting caller as well
            self.logger.debug("Background cache task finished with error", error=str(exc))

    def _deserialize(self, key: str, raw: Any) -> Optional[Any]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning("Failed to deserialize cached payload", key=key)
            return None

    @staticmethod
    def _validate_ttl(ttl: Any) -> int:
        if ttl is None or int(ttl) <= 0:
            raise ValueError(f"Cache entries require a positive TTL, got {ttl!r}")
        return int(ttl)

    def _record_access(self, prefix: CachePrefix, hit: bool) -> None:
        self._stats["hits" if hit else "misses"] += 1
        self._emit("cache_hits_total" if hit else "cache_misses_total", cache_type=prefix.value)

    def _record_error(self, prefix: CachePrefix, operation: str, key: str, exc: Exception) -> None:
        self._stats["errors"] += 1
        self.logger.error("Cache store error", operation=operation, key=key, error=str(exc))
        self._emit("cache_errors_total", cache_type=prefix.value, operation=operation)

    def _record_cleared(self, prefix: CachePrefix, count: int) -> None:
        if count:
            self._emit("cache_cleared_keys_total", amount=count, cache_type=prefix.value)

    def _observe_fetch(self, prefix: CachePrefix, duration: float) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.observe_histogram("cache_fetch_duration_seconds", duration, cache_type=prefix.value)
        except Exception as exc:  # pragma: no cover - metrics failures should never break caching
            self.logger.debug("Failed to record cache metrics", error=str(exc))

    def _emit(self, metric_name: str, **labels) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter(metric_name, **labels)
        except Exception as exc:  # pragma: no cover - metrics failures should never break caching
            self.logger.debug("Failed to record cache metrics", error=str(exc))
