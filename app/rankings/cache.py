"""Three-tier in-memory cache for snapshots and derived query results.

``main`` holds the single global snapshot, ``server`` holds one snapshot per
region/server scope, and ``query`` memoises derived views (filters, ranges,
stats). Each tier has its own TTL; the bounded tiers evict the entry with the
oldest ``stored_at`` when full, and hits never reorder eviction.
"""
from __future__ import annotations

import threading
import time
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from . import config
from .logging_utils import _ranking_event

T = TypeVar("T")
Clock = Callable[[], float]

_MAIN_KEY = "main"


class Tier(str, Enum):
    MAIN = "main"
    SERVER = "server"
    QUERY = "query"


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float
    scope_key: Hashable
    hit_count: int = 0


class _TierStore:
    def __init__(self, ttl: float, max_entries: Optional[int]) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self.entries: Dict[Hashable, CacheEntry[Any]] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.lock = threading.Lock()


class CacheManager:
    def __init__(
        self,
        *,
        main_ttl: float | None = None,
        server_ttl: float | None = None,
        query_ttl: float | None = None,
        server_max_entries: int | None = None,
        query_max_entries: int | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._clock = clock
        # Dict order doubles as the lock acquisition order for invalidate_all.
        self._tiers: Dict[Tier, _TierStore] = {
            Tier.MAIN: _TierStore(
                config.MAIN_CACHE_TTL_SECONDS if main_ttl is None else main_ttl, None
            ),
            Tier.SERVER: _TierStore(
                config.SERVER_CACHE_TTL_SECONDS if server_ttl is None else server_ttl,
                config.SERVER_CACHE_MAX_ENTRIES if server_max_entries is None else server_max_entries,
            ),
            Tier.QUERY: _TierStore(
                config.QUERY_CACHE_TTL_SECONDS if query_ttl is None else query_ttl,
                config.QUERY_CACHE_MAX_ENTRIES if query_max_entries is None else query_max_entries,
            ),
        }

    def _store(self, tier: Tier | str) -> _TierStore:
        return self._tiers[Tier(tier)]

    @staticmethod
    def _key(tier: Tier | str, key: Hashable | None) -> Hashable:
        if Tier(tier) is Tier.MAIN:
            return _MAIN_KEY
        if key is None:
            raise ValueError(f"A key is required for the {Tier(tier).value} tier")
        return key

    def get(self, tier: Tier | str, key: Hashable | None = None) -> Any | None:
        """Return the cached value or ``None`` when absent or expired."""

        store = self._store(tier)
        cache_key = self._key(tier, key)
        with store.lock:
            entry = store.entries.get(cache_key)
            if entry is None:
                store.misses += 1
                return None
            if self._clock() - entry.stored_at > store.ttl:
                del store.entries[cache_key]
                store.misses += 1
                return None
            entry.hit_count += 1
            store.hits += 1
            return entry.value

    def get_entry(self, tier: Tier | str, key: Hashable | None = None) -> CacheEntry[Any] | None:
        """Return a copy of the live entry without counting a hit."""

        store = self._store(tier)
        cache_key = self._key(tier, key)
        with store.lock:
            entry = store.entries.get(cache_key)
            if entry is None or self._clock() - entry.stored_at > store.ttl:
                return None
            return CacheEntry(entry.value, entry.stored_at, entry.scope_key, entry.hit_count)

    def set(self, tier: Tier | str, key: Hashable | None, value: Any) -> None:
        store = self._store(tier)
        cache_key = self._key(tier, key)
        with store.lock:
            if (
                store.max_entries is not None
                and cache_key not in store.entries
                and len(store.entries) >= store.max_entries
            ):
                oldest_key = min(store.entries, key=lambda k: store.entries[k].stored_at)
                del store.entries[oldest_key]
                store.evictions += 1
                _ranking_event(
                    "state",
                    phase="cache",
                    kind="evicted",
                    tier=Tier(tier).value,
                    key=str(oldest_key),
                )
            store.entries[cache_key] = CacheEntry(value, self._clock(), cache_key)

    def delete(self, tier: Tier | str, key: Hashable | None = None) -> bool:
        store = self._store(tier)
        with store.lock:
            return store.entries.pop(self._key(tier, key), None) is not None

    def clear_tier(self, tier: Tier | str) -> None:
        store = self._store(tier)
        with store.lock:
            store.entries.clear()

    def invalidate_all(self) -> None:
        """Clear every tier while holding all tier locks."""

        with ExitStack() as stack:
            for store in self._tiers.values():
                stack.enter_context(store.lock)
            cleared = {tier.value: len(store.entries) for tier, store in self._tiers.items()}
            for store in self._tiers.values():
                store.entries.clear()
        _ranking_event("state", phase="cache", kind="invalidate_all", cleared=cleared)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        payload: dict[str, Any] = {}
        for tier, store in self._tiers.items():
            with store.lock:
                live = {k: e for k, e in store.entries.items() if now - e.stored_at <= store.ttl}
                payload[tier.value] = {
                    "size": len(live),
                    "max_size": store.max_entries,
                    "ttl_seconds": store.ttl,
                    "hits": store.hits,
                    "misses": store.misses,
                    "evictions": store.evictions,
                    "keys": sorted(str(k) for k in live),
                    "entry_hits": sum(e.hit_count for e in live.values()),
                    "oldest_age_seconds": (
                        round(now - min(e.stored_at for e in live.values()), 3) if live else None
                    ),
                }
        return payload


__all__ = ["CacheManager", "CacheEntry", "Tier"]
