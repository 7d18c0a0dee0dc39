"""
Shared fixtures for Gateway tests.
"""

import math
import re
from typing import Dict, List, Optional, Tuple

import pytest

from service_gateway.app.caching.cache_manager import CacheManager


def redis_glob(pattern: str) -> "re.Pattern[str]":
    """Compile a Redis MATCH glob (``*``, ``?``, ``[...]``, backslash escapes)."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[" and "]" in pattern[i + 1:]:
            end = pattern.index("]", i + 1)
            parts.append(f"[{pattern[i + 1:end]}]")
            i = end + 1
            continue
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


class FakeStore:
    """In-memory key-value store with expiry driven by a manual clock."""

    def __init__(self):
        self.now = 1_000.0
        self.data: Dict[str, Tuple[str, float]] = {}
        self.closed = False

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ttl(self, key: str) -> Optional[float]:
        self._expire()
        entry = self.data.get(key)
        return entry[1] - self.now if entry else None

    def _expire(self) -> None:
        for key in [key for key, (_, expires_at) in self.data.items() if expires_at <= self.now]:
            del self.data[key]

    async def get(self, key: str) -> Optional[str]:
        self._expire()
        entry = self.data.get(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        self.data[key] = (value, self.now + ttl)

    async def delete(self, *keys: str) -> int:
        self._expire()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def scan(self, pattern: str) -> List[str]:
        self._expire()
        matcher = redis_glob(pattern)
        return [key for key in self.data if matcher.match(key)]

    async def increment(self, key: str, ttl: int) -> Tuple[int, int]:
        self._expire()
        entry = self.data.get(key)
        if entry is None:
            self.data[key] = ("1", self.now + ttl)
            return 1, ttl
        count = int(entry[0]) + 1
        self.data[key] = (str(count), entry[1])
        return count, math.ceil(entry[1] - self.now)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def count(self, metric_name: str) -> float:
        return sum(amount for name, amount, _ in self.counters if name == metric_name)


@pytest.fixture
def store():
    """In-memory store double."""
    return FakeStore()


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def cache_manager(store, metrics):
    """CacheManager over the in-memory store."""
    return CacheManager(store, metrics=metrics)
