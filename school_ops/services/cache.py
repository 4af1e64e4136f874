"""
Cache abstraction for generated insights.

Cache is an optimization only, never a source of truth. Implementations are
injected per application so a shared store can replace the in-memory one.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol


class InsightsCache(Protocol):
    async def get(self, key: str) -> tuple[Any, float] | None:
        """Return (value, stored_at) or None when missing or expired."""
        ...

    async def set(self, key: str, value: Any) -> float:
        """Store value, return the stored_at timestamp."""
        ...

    async def delete(self, key: str) -> bool:
        ...


@dataclass
class _Entry:
    value: Any
    stored_at: float


class InMemoryInsightsCache:
    """TTL check is a comparison against the stored write timestamp."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, _Entry] = {}

    async def get(self, key: str) -> tuple[Any, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.value, entry.stored_at

    async def set(self, key: str, value: Any) -> float:
        stored_at = self.clock()
        self._entries[key] = _Entry(value=value, stored_at=stored_at)
        return stored_at

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None


def insights_cache_key(insight_type: str, period_days: int) -> str:
    return f"insights:{insight_type}:{period_days}"
