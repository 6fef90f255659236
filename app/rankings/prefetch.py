"""Scheduled "refresh all scopes" runs and their persisted status."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, Optional

from . import config
from .logging_utils import _ranking_event
from .models import Scope
from .telemetry import RunTelemetry
from .utils import load_json_file, log_line, write_json_atomic

# A "running" status older than this is left over from a crashed process.
STALE_RUN_SECONDS = 6 * 3600

_DEFAULT_STATUS: Dict[str, Any] = {
    "is_running": False,
    "last_started": None,
    "last_completed": None,
    "completed_servers": 0,
    "total_servers": 0,
    "errors": [],
    "run_id": None,
    "summary": {},
}

_RUN_LOCK = threading.Lock()
_STATUS_LOCK = threading.Lock()


def load_status() -> Dict[str, Any]:
    data = load_json_file(config.PREFETCH_STATUS_FILE)
    status = dict(_DEFAULT_STATUS)
    if isinstance(data, dict):
        status.update(data)
    return status


def save_status(**fields: Any) -> Dict[str, Any]:
    """Merge ``fields`` into the persisted status and return the result."""

    with _STATUS_LOCK:
        status = load_status()
        status.update(fields)
        status["saved_at_ts"] = time.time()
        write_json_atomic(config.PREFETCH_STATUS_FILE, status)
        return status


def _is_stale(status: Dict[str, Any]) -> bool:
    started = status.get("last_started")
    return not isinstance(started, (int, float)) or time.time() - started > STALE_RUN_SECONDS


def refresh_all_scopes(
    scopes: Iterable[Scope],
    refresh_one: Callable[[Scope, bool], str],
    *,
    force_update: bool = False,
    max_workers: Optional[int] = None,
) -> Dict[str, Any]:
    """Refresh every scope on a thread pool and persist progress.

    ``refresh_one`` returns the outcome source (``cache``/``stable``/``crawl``)
    and raises on failure. Per-scope failures are recorded and do not stop the
    run. Returns the final status, or ``{"started": False, ...}`` when another
    run is already active.
    """

    if not _RUN_LOCK.acquire(blocking=False):
        return {"started": False, "reason": "already_running", **load_status()}

    try:
        status = load_status()
        if status.get("is_running") and not _is_stale(status):
            return {"started": False, "reason": "already_running", **status}

        scope_list = list(scopes)
        run = RunTelemetry(mode="force" if force_update else "scheduled")
        save_status(
            is_running=True,
            last_started=time.time(),
            completed_servers=0,
            total_servers=len(scope_list),
            errors=[],
            run_id=run.run_id,
            summary={},
        )
        _ranking_event(
            "state",
            phase="prefetch",
            kind="start",
            run_id=run.run_id,
            scopes=len(scope_list),
            force_update=force_update,
        )

        completed = 0
        errors: list[Dict[str, Any]] = []
        workers = max(1, max_workers or config.PREFETCH_WORKERS)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(refresh_one, scope, force_update): scope for scope in scope_list
            }
            for future in as_completed(futures):
                scope = futures[future]
                try:
                    source = future.result()
                    run.add("ok", source, {"scope": scope.scope_id})
                except Exception as exc:  # noqa: BLE001
                    errors.append(
                        {
                            "scope": scope.scope_id,
                            "error": str(exc),
                            "error_code": getattr(exc, "error_code", None),
                            "at": time.time(),
                        }
                    )
                    run.add("failed", str(exc), {"scope": scope.scope_id})
                    log_line(f"[PREFETCH] {scope.scope_id} failed: {exc}")
                completed += 1
                save_status(completed_servers=completed, errors=errors)

        summary = dict(run.summary)
        run_path = run.finalize({"errors": errors})
        final = save_status(
            is_running=False,
            last_completed=time.time(),
            completed_servers=completed,
            errors=errors,
            summary=summary,
            run_file=str(run_path),
        )
        _ranking_event(
            "state",
            phase="prefetch",
            kind="done",
            run_id=run.run_id,
            completed=completed,
            failed=len(errors),
        )
        return {"started": True, **final}
    except Exception:
        save_status(is_running=False)
        raise
    finally:
        _RUN_LOCK.release()


__all__ = ["load_status", "save_status", "refresh_all_scopes", "STALE_RUN_SECONDS"]
