"""Ranking service: the object the HTTP layer and CLI talk to.

Owns the cache, rate limiter, crawl controller, quarantine queue and
persistence store for one process. Derived views are memoised in the query
tier keyed by the snapshot's ``captured_at`` so a new crawl invalidates them
implicitly.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Hashable, List, Optional

from . import config, prefetch, reporting
from .browser_session import SessionPool
from .cache import CacheManager, Tier
from .crawler import CrawlController, CrawlResult
from .kv_store import KeyValueStore, RECENT_LOGS_KEY, build_store
from .logging_utils import _ranking_event
from .models import ClassTag, Record, Scope, Snapshot, sorted_by_power
from .quarantine import ErrorAction, QuarantineQueue
from .rate_limiter import RateLimiter
from .retry_policy import RetryEngine
from .scopes import ScopeRegistry
from .telemetry import Telemetry
from .utils import remove_stale_files
from .validation import repair_error_record


class RankingService:
    def __init__(
        self,
        *,
        cache: CacheManager | None = None,
        limiter: RateLimiter | None = None,
        registry: ScopeRegistry | None = None,
        store: KeyValueStore | None = None,
        quarantine: QuarantineQueue | None = None,
        telemetry: Telemetry | None = None,
        sessions: SessionPool | None = None,
        retry: RetryEngine | None = None,
        controller: CrawlController | None = None,
    ) -> None:
        self.telemetry = telemetry or Telemetry()
        self.cache = cache or CacheManager()
        self.limiter = limiter or RateLimiter(telemetry=self.telemetry)
        self.registry = registry or ScopeRegistry()
        self.store = store
        self.quarantine = quarantine or QuarantineQueue(telemetry=self.telemetry)
        self.retry = retry or RetryEngine(telemetry=self.telemetry)
        self.controller = controller or CrawlController(
            cache=self.cache,
            sessions=sessions or SessionPool(),
            registry=self.registry,
            store=self.store,
            retry=self.retry,
            quarantine=self.quarantine,
            telemetry=self.telemetry,
        )

    @classmethod
    def from_config(cls) -> "RankingService":
        return cls(store=build_store())

    # -- snapshots ---------------------------------------------------------

    def get_rankings(self, scope: Scope, *, force_refresh: bool = False) -> CrawlResult:
        return self.controller.crawl(scope, force_refresh=force_refresh)

    def get_snapshot(self, scope: Scope, *, force_refresh: bool = False) -> Snapshot:
        return self.get_rankings(scope, force_refresh=force_refresh).snapshot

    def _memoise(
        self,
        kind: str,
        snapshot: Snapshot,
        params: Hashable,
        compute: Callable[[], Any],
    ) -> Any:
        key = (kind, snapshot.scope_id, snapshot.captured_at, params)
        cached = self.cache.get(Tier.QUERY, key)
        if cached is not None:
            return cached
        value = compute()
        self.cache.set(Tier.QUERY, key, value)
        return value

    # -- derived queries -----------------------------------------------

    def query_range(
        self, scope: Scope, start: int, end: int, *, force_refresh: bool = False
    ) -> List[Record]:
        if start < 1 or end < start:
            raise ValueError("Range must satisfy 1 <= start <= end")
        snapshot = self.get_snapshot(scope, force_refresh=force_refresh)
        return self._memoise(
            "range",
            snapshot,
            (start, end),
            lambda: [r for r in snapshot.records if start <= r.rank <= end],
        )

    def query_clan(self, scope: Scope, clan_name: str, *, force_refresh: bool = False) -> List[Record]:
        needle = clan_name.strip().lower()
        snapshot = self.get_snapshot(scope, force_refresh=force_refresh)
        return self._memoise(
            "clan",
            snapshot,
            needle,
            lambda: [r for r in snapshot.records if r.clan_name.lower() == needle],
        )

    def query_class(
        self, scope: Scope, class_tag: ClassTag | str, *, force_refresh: bool = False
    ) -> List[Record]:
        tag = ClassTag.coerce(class_tag)
        snapshot = self.get_snapshot(scope, force_refresh=force_refresh)
        return self._memoise(
            "class",
            snapshot,
            tag.value,
            lambda: [r for r in snapshot.records if r.class_tag is tag],
        )

    def query_server_name(self, server_name: str, *, force_refresh: bool = False) -> List[Record]:
        """Filter the global board by the server column."""

        needle = server_name.strip().upper()
        snapshot = self.get_snapshot(Scope(), force_refresh=force_refresh)
        return self._memoise(
            "server_name",
            snapshot,
            needle,
            lambda: [r for r in snapshot.records if r.server_name.upper() == needle],
        )

    def stats(self, scope: Scope, *, force_refresh: bool = False) -> Dict[str, Any]:
        snapshot = self.get_snapshot(scope, force_refresh=force_refresh)
        return self._memoise("stats", snapshot, None, lambda: reporting.summarize_snapshot(snapshot))

    # -- cross-scope search --------------------------------------------

    def _read_scope(self, scope: Scope) -> Snapshot | None:
        try:
            return self.get_snapshot(scope)
        except Exception as exc:  # noqa: BLE001
            _ranking_event(
                "error",
                phase="search",
                scope=scope.scope_id,
                error=str(exc),
                error_code=getattr(exc, "error_code", None),
            )
            return None

    def _search(
        self,
        predicate: Callable[[Record], bool],
        scopes: Optional[List[Scope]] = None,
    ) -> List[Record]:
        targets = scopes if scopes is not None else self.registry.server_scopes()
        if not targets:
            return []
        workers = max(1, min(config.SEARCH_WORKERS, len(targets)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            snapshots = list(executor.map(self._read_scope, targets))
        matches = [
            record
            for snapshot in snapshots
            if snapshot is not None
            for record in snapshot.records
            if predicate(record)
        ]
        return sorted_by_power(matches)

    def search_character(self, name: str, *, scopes: Optional[List[Scope]] = None) -> List[Record]:
        needle = name.strip().lower()
        if not needle:
            return []
        return self._search(lambda r: needle in r.character_name.lower(), scopes)

    def search_clan(self, clan_name: str, *, scopes: Optional[List[Scope]] = None) -> List[Record]:
        needle = clan_name.strip().lower()
        if not needle:
            return []
        return self._search(lambda r: r.clan_name.lower() == needle, scopes)

    # -- scheduled operations ------------------------------------------

    def _refresh_one(self, scope: Scope, force_update: bool) -> str:
        return self.get_rankings(scope, force_refresh=force_update).source

    def refresh_all(self, *, force_update: bool = False) -> Dict[str, Any]:
        return prefetch.refresh_all_scopes(
            self.registry.all_scopes(),
            self._refresh_one,
            force_update=force_update,
        )

    def cleanup(self) -> Dict[str, int]:
        summary = {
            "purged_buckets": self.limiter.purge_idle(),
            "removed_pages": remove_stale_files(
                config.SCRAPED_PAGES_DIR,
                config.RAW_PAGE_MAX_AGE_SECONDS,
                patterns=("*.html", "*.png"),
            ),
            "pruned_quarantine": self.quarantine.prune(),
        }
        _ranking_event("state", phase="cleanup", **summary)
        return summary

    def reprocess_quarantine(self, action: ErrorAction | str = ErrorAction.AUTO_FIX) -> Dict[str, int]:
        return self.quarantine.reprocess(action, repair_error_record)

    # -- operational views ---------------------------------------------

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.invalidate_all()

    def recent_operations(self) -> List[Dict[str, Any]]:
        if self.store is None:
            return []
        value = self.store.get(RECENT_LOGS_KEY)
        return value if isinstance(value, list) else []


__all__ = ["RankingService"]
