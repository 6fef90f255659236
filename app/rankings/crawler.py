"""Change-detection crawl controller.

One call to :meth:`CrawlController.crawl` runs one cycle for one scope:

``IDLE -> CACHE_CHECK -> [HIT_FRESH] -> SESSION_OPEN -> FIRST_PAGE_FETCHED ->
DETECT_CHANGE -> [STABLE] -> PAGINATING -> COMPLETED -> COMMITTED``

The session-to-commit part runs inside the retry engine, so a closed browser
session restarts the cycle from ``SESSION_OPEN``. Only one cycle per scope
runs at a time; concurrent callers wait and then read the fresh cache entry.
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config
from .browser_session import BrowserSession, SessionPool
from .cache import CacheManager, Tier
from .change_detection import ChangeDecision, ChangeDetector
from .error_codes import CrawlError, ErrorCode, SessionClosedError
from .kv_store import KeyValueStore, append_operation
from .logging_utils import _ranking_event
from .models import ClassTag, Record, Scope, Snapshot
from .page_model import LeaderboardPageModel, PageModel
from .quarantine import ErrorAction, ErrorKind, QuarantineQueue
from .retry_policy import RetryEngine
from .scopes import ScopeRegistry
from .telemetry import Telemetry
from .utils import log_line
from .validation import (
    PLAYER_RANKING_SCHEMA,
    ValidationOutcome,
    ValidationStrategy,
    validate_collection,
)


class CrawlState(str, Enum):
    IDLE = "idle"
    CACHE_CHECK = "cache_check"
    HIT_FRESH = "hit_fresh"
    SESSION_OPEN = "session_open"
    FIRST_PAGE_FETCHED = "first_page_fetched"
    DETECT_CHANGE = "detect_change"
    STABLE = "stable"
    PAGINATING = "paginating"
    COMPLETED = "completed"
    COMMITTED = "committed"
    DONE = "done"
    ERROR = "error"


@dataclass
class CrawlResult:
    snapshot: Snapshot
    source: str
    states: List[CrawlState] = field(default_factory=list)
    attempts: int = 0
    decision: Optional[ChangeDecision] = None
    failed_count: int = 0
    persisted: bool = False


def snapshot_cache_location(scope: Scope) -> tuple[Tier, Optional[str]]:
    if scope.is_global:
        return Tier.MAIN, None
    return Tier.SERVER, scope.scope_id


class CrawlController:
    def __init__(
        self,
        *,
        cache: CacheManager,
        sessions: SessionPool,
        registry: ScopeRegistry,
        store: KeyValueStore | None = None,
        page_model: PageModel | None = None,
        detector: ChangeDetector | None = None,
        retry: RetryEngine | None = None,
        quarantine: QuarantineQueue | None = None,
        telemetry: Telemetry | None = None,
        strategy: ValidationStrategy | str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.sessions = sessions
        self.registry = registry
        self.store = store
        self.page_model = page_model or LeaderboardPageModel()
        self.detector = detector or ChangeDetector()
        self.telemetry = telemetry or Telemetry()
        self.retry = retry or RetryEngine(telemetry=self.telemetry)
        self.quarantine = quarantine
        self.strategy = ValidationStrategy.coerce(strategy or config.VALIDATION_STRATEGY)
        self._clock = clock
        self._scope_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        self._failures: Dict[str, int] = defaultdict(int)
        self._failures_lock = threading.Lock()

    # -- cache helpers -------------------------------------------------

    def cached_snapshot(self, scope: Scope) -> Optional[Snapshot]:
        tier, key = snapshot_cache_location(scope)
        return self.cache.get(tier, key)

    def _cache_put(self, scope: Scope, snapshot: Snapshot) -> None:
        tier, key = snapshot_cache_location(scope)
        self.cache.set(tier, key, snapshot)

    def _scope_lock(self, scope: Scope) -> threading.Lock:
        with self._locks_guard:
            return self._scope_locks[scope.scope_id]

    # -- public entrypoint ---------------------------------------------

    def crawl(self, scope: Scope, *, force_refresh: bool = False) -> CrawlResult:
        states: List[CrawlState] = [CrawlState.IDLE]

        if not force_refresh:
            states.append(CrawlState.CACHE_CHECK)
            cached = self.cached_snapshot(scope)
            if cached is not None:
                states += [CrawlState.HIT_FRESH, CrawlState.DONE]
                return CrawlResult(snapshot=cached, source="cache", states=states)

        with self._scope_lock(scope):
            if not force_refresh:
                cached = self.cached_snapshot(scope)
                if cached is not None:
                    states += [CrawlState.HIT_FRESH, CrawlState.DONE]
                    return CrawlResult(snapshot=cached, source="cache", states=states)
            return self._crawl_locked(scope, force_refresh, states)

    def _crawl_locked(self, scope: Scope, force_refresh: bool, states: List[CrawlState]) -> CrawlResult:
        deadline = config.CRAWL_CYCLE_DEADLINE_SECONDS or None
        policy = replace(self.retry.policy, deadline_seconds=deadline)
        attempts = 0

        def cycle() -> CrawlResult:
            nonlocal attempts
            attempts += 1
            return self._run_cycle(scope, force_refresh, states)

        self.telemetry.increment("crawl_cycles")
        _ranking_event("state", phase="crawl", kind="start", scope=scope.scope_id, force_refresh=force_refresh)
        try:
            result = self.retry.run(cycle, policy, label=f"crawl:{scope.scope_id}")
        except Exception as exc:
            states.append(CrawlState.ERROR)
            self._record_failure(scope, exc, attempts)
            raise

        self._record_success(scope)
        result.attempts = attempts
        result.states = states
        _ranking_event(
            "state",
            phase="crawl",
            kind="done",
            scope=scope.scope_id,
            source=result.source,
            records=len(result.snapshot),
            pages=result.snapshot.page_count,
            partial=result.snapshot.partial,
            attempts=attempts,
        )
        return result

    # -- one cycle -----------------------------------------------------

    def _run_cycle(self, scope: Scope, force_refresh: bool, states: List[CrawlState]) -> CrawlResult:
        url = self.registry.url_for(scope)
        decision: Optional[ChangeDecision] = None

        with self.sessions.session(label=scope.scope_id) as session:
            states.append(CrawlState.SESSION_OPEN)
            session.open(url)
            html = session.content()
            self._dump_page(scope, html, 1)
            rows = self.page_model.parse(html)
            states.append(CrawlState.FIRST_PAGE_FETCHED)

            if not rows:
                self._screenshot(session, scope, "empty")
                raise CrawlError(
                    f"No leaderboard rows found for {scope.scope_id}",
                    error_code=ErrorCode.SITE_STRUCTURE,
                    retryable=False,
                )

            if not force_refresh:
                states.append(CrawlState.DETECT_CHANGE)
                existing = self._load_existing(scope)
                decision = self.detector.decide(rows, existing, scope_id=scope.scope_id)
                if not decision.should_continue and existing is not None:
                    snapshot = existing.stamped(scope)
                    self._cache_put(scope, snapshot)
                    self.telemetry.increment("crawl_stable")
                    states += [CrawlState.STABLE, CrawlState.DONE]
                    return CrawlResult(snapshot=snapshot, source="stable", decision=decision)

            states.append(CrawlState.PAGINATING)
            rows, pages, partial = self._paginate(session, scope, rows)
            states.append(CrawlState.COMPLETED)

        snapshot, failed = self._build_snapshot(scope, rows, pages, partial, url)
        persisted = self._commit(scope, snapshot)
        states.append(CrawlState.COMMITTED)
        return CrawlResult(
            snapshot=snapshot,
            source="crawl",
            decision=decision,
            failed_count=failed,
            persisted=persisted,
        )

    def _paginate(
        self,
        session: BrowserSession,
        scope: Scope,
        rows: List[Dict[str, Any]],
    ) -> tuple[List[Dict[str, Any]], int, bool]:
        pages = 1
        partial = False
        while pages < config.MAX_PAGES:
            try:
                if not session.has_reveal_control():
                    break
                before = session.row_count()
                session.reveal_more()
                after = session.wait_for_growth(before)
                session.settle(config.SETTLE_SECONDS)
                if after <= before:
                    break
                html = session.content()
                parsed = self.page_model.parse(html)
            except SessionClosedError:
                raise
            except CrawlError as exc:
                if exc.error_code == ErrorCode.TIMEOUT:
                    _ranking_event(
                        "state", phase="paginate", kind="no_growth", scope=scope.scope_id, pages=pages
                    )
                    break
                partial = self._pagination_failed(session, scope, pages, exc)
                break
            except Exception as exc:  # noqa: BLE001
                partial = self._pagination_failed(session, scope, pages, exc)
                break

            if len(parsed) <= len(rows):
                break
            rows = parsed
            pages += 1
            self._dump_page(scope, html, pages)

        return rows, pages, partial

    def _pagination_failed(self, session: BrowserSession, scope: Scope, pages: int, exc: BaseException) -> bool:
        _ranking_event(
            "error",
            phase="paginate",
            scope=scope.scope_id,
            pages=pages,
            error=str(exc),
            error_code=getattr(exc, "error_code", None),
        )
        self._screenshot(session, scope, f"page{pages}")
        return True

    # -- validation and commit -----------------------------------------

    def _build_snapshot(
        self,
        scope: Scope,
        rows: Sequence[Dict[str, Any]],
        pages: int,
        partial: bool,
        url: str,
    ) -> tuple[Snapshot, int]:
        captured_at = self._clock()

        def to_record(outcome: ValidationOutcome) -> Record:
            value = outcome.value
            # A defaulted or clamped rank would break the ordering of every row after it.
            if "rank" in outcome.invalid_fields:
                raise ValueError("rank failed validation, row dropped")
            return Record(
                rank=int(value["rank"]),
                character_name=str(value["character_name"]),
                power_score=int(value["power_score"]),
                clan_name=str(value.get("clan_name") or ""),
                class_tag=ClassTag.coerce(value.get("class_tag")),
                server_name=str(value.get("server_name") or ""),
                scope_id=scope.scope_id,
                captured_at=captured_at,
                has_validation_errors=outcome.has_validation_errors,
                invalid_fields=tuple(outcome.invalid_fields),
            )

        result = validate_collection(
            rows,
            PLAYER_RANKING_SCHEMA,
            self.strategy,
            quarantine=self.quarantine,
            factory=to_record,
        )
        records = self._enforce_rank_order(scope, result.items)
        failed = result.failed_count + (len(result.items) - len(records))
        if failed or result.flagged_count:
            self.telemetry.increment("validation_errors", failed + result.flagged_count)

        if not records:
            raise CrawlError(
                f"No valid records left for {scope.scope_id}",
                error_code=ErrorCode.SITE_STRUCTURE,
                retryable=False,
            )

        snapshot = Snapshot(
            scope_id=scope.scope_id,
            records=tuple(records),
            captured_at=captured_at,
            page_count=pages,
            partial=partial,
            metadata={
                "source_url": url,
                "failed_count": failed,
                "flagged_count": result.flagged_count,
            },
        )
        return snapshot.stamped(scope), failed

    def _enforce_rank_order(self, scope: Scope, records: Sequence[Record]) -> List[Record]:
        kept: List[Record] = []
        previous = 0
        for record in records:
            if record.rank > previous:
                kept.append(record)
                previous = record.rank
                continue
            message = f"rank {record.rank} does not follow {previous} in {scope.scope_id}"
            _ranking_event("error", phase="validation", kind="rank_order", scope=scope.scope_id, error=message)
            if self.quarantine is not None:
                self.quarantine.enqueue(
                    ErrorKind.INCONSISTENCY,
                    {"record": record.to_dict(), "expected_after": previous, "actual": record.rank},
                    action=ErrorAction.QUARANTINE,
                    error=message,
                    error_code=ErrorCode.INCONSISTENCY,
                    metadata={"scope": scope.scope_id},
                )
        return kept

    def _commit(self, scope: Scope, snapshot: Snapshot) -> bool:
        self._cache_put(scope, snapshot)
        if self.store is None:
            return False

        store = self.store
        key = scope.persistence_key
        policy = replace(self.retry.policy, max_retries=config.PERSISTENCE_MAX_RETRIES)
        metadata = {"scope": scope.scope_id, "records": len(snapshot), "partial": snapshot.partial}
        try:
            self.retry.run(
                lambda: store.put(key, snapshot.to_dict(), metadata),
                policy,
                label=f"persist:{key}",
            )
        except Exception as exc:  # noqa: BLE001
            self.telemetry.increment("persistence_failures")
            _ranking_event("error", phase="persistence", key=key, error=str(exc))
            return False

        try:
            append_operation(
                store,
                {
                    "type": "scope_update",
                    "scope": scope.scope_id,
                    "records": len(snapshot),
                    "pages": snapshot.page_count,
                    "partial": snapshot.partial,
                    "timestamp": snapshot.captured_at,
                },
            )
        except Exception as exc:  # noqa: BLE001
            _ranking_event("error", phase="persistence", key="recent_logs", error=str(exc))
        return True

    def _load_existing(self, scope: Scope) -> Optional[Snapshot]:
        if self.store is None:
            return None
        try:
            payload = self.store.get(scope.persistence_key)
        except Exception as exc:  # noqa: BLE001
            _ranking_event("error", phase="change_detection", scope=scope.scope_id, error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return Snapshot.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            log_line(f"[CRAWL] Stored snapshot for {scope.scope_id} is unreadable: {exc}")
            return None

    # -- failure accounting --------------------------------------------

    def _record_failure(self, scope: Scope, exc: BaseException, attempts: int) -> None:
        with self._failures_lock:
            self._failures[scope.scope_id] += 1
            consecutive = self._failures[scope.scope_id]
        self.telemetry.increment("crawl_failures")
        _ranking_event(
            "error",
            phase="crawl",
            scope=scope.scope_id,
            attempts=attempts,
            consecutive_failures=consecutive,
            error=str(exc),
            error_code=getattr(exc, "error_code", None),
        )
        if consecutive > config.CONSECUTIVE_FAILURE_ALERT_THRESHOLD:
            self.telemetry.alert(
                "crawl_repeated_failure",
                f"{scope.scope_id} failed {consecutive} consecutive crawl cycles: {exc}",
                scope=scope.scope_id,
                consecutive_failures=consecutive,
            )

    def _record_success(self, scope: Scope) -> None:
        with self._failures_lock:
            self._failures.pop(scope.scope_id, None)

    def consecutive_failures(self, scope: Scope) -> int:
        with self._failures_lock:
            return self._failures.get(scope.scope_id, 0)

    # -- debugging artefacts -------------------------------------------

    def _dump_page(self, scope: Scope, html: str, page: int) -> None:
        if not config.SAVE_RAW_PAGES:
            return
        safe_scope = scope.scope_id.replace("/", "_")
        path = config.SCRAPED_PAGES_DIR / f"{safe_scope}_{int(self._clock())}_p{page}.html"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(html, encoding="utf-8")
        except OSError as exc:
            log_line(f"[CRAWL] Failed to save raw page {path}: {exc}")

    def _screenshot(self, session: BrowserSession, scope: Scope, suffix: str) -> None:
        safe_scope = scope.scope_id.replace("/", "_")
        path = config.SCRAPED_PAGES_DIR / f"error_{safe_scope}_{int(self._clock())}_{suffix}.png"
        try:
            session.screenshot(path)
        except Exception as exc:  # noqa: BLE001
            log_line(f"[CRAWL] Screenshot failed for {scope.scope_id}: {exc}")


__all__ = ["CrawlController", "CrawlResult", "CrawlState", "snapshot_cache_location"]
