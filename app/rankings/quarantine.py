"""File-backed queue of records that failed validation or processing.

Each entry lives in its own JSON file under ``config.QUARANTINE_DIR`` so a
crash never corrupts the rest of the queue. The queue is capacity bounded and
prunes the oldest entries first.
"""

from __future__ import annotations

import itertools
import os
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import config
from .logging_utils import _ranking_event
from .telemetry import Telemetry
from .utils import load_json_file, write_json_atomic


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    MISSING_FIELD = "missing_field"
    INCONSISTENCY = "inconsistency"
    CRAWL = "crawl"
    PERSISTENCE = "persistence"
    UNKNOWN = "unknown"


class ErrorAction(str, Enum):
    DISCARD = "discard"
    QUARANTINE = "quarantine"
    RETRY_LATER = "retry_later"
    AUTO_FIX = "auto_fix"


@dataclass
class ErrorRecord:
    id: str
    kind: ErrorKind
    payload: Dict[str, Any]
    action: ErrorAction
    created_at: float
    last_updated_at: float
    attempts: int = 0
    error: str = ""
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["action"] = self.action.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorRecord":
        return cls(
            id=str(data["id"]),
            kind=ErrorKind(data.get("kind", ErrorKind.UNKNOWN.value)),
            payload=dict(data.get("payload") or {}),
            action=ErrorAction(data.get("action", ErrorAction.QUARANTINE.value)),
            created_at=float(data.get("created_at") or 0.0),
            last_updated_at=float(data.get("last_updated_at") or 0.0),
            attempts=int(data.get("attempts") or 0),
            error=str(data.get("error") or ""),
            error_code=data.get("error_code"),
            metadata=dict(data.get("metadata") or {}),
            history=list(data.get("history") or []),
        )


@dataclass
class RepairResult:
    success: bool
    value: Any = None
    error: Optional[str] = None
    next_action: Optional[ErrorAction] = None


RepairFn = Callable[[ErrorRecord], RepairResult]


class QuarantineQueue:
    def __init__(
        self,
        directory: Path | None = None,
        *,
        max_entries: int | None = None,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory or config.QUARANTINE_DIR)
        self.max_entries = config.QUARANTINE_MAX_ENTRIES if max_entries is None else max_entries
        self.telemetry = telemetry or Telemetry()
        self._clock = clock
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)
        # id -> created_at, oldest first; built from disk on first use.
        self._index: Optional["OrderedDict[str, float]"] = None

    def _path(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def _write(self, record: ErrorRecord) -> None:
        write_json_atomic(self._path(record.id), record.to_dict())

    def _load_all(self) -> List[ErrorRecord]:
        if not self.directory.is_dir():
            return []
        records: List[ErrorRecord] = []
        for path in self.directory.glob("*.json"):
            data = load_json_file(path)
            if not isinstance(data, dict) or "id" not in data:
                continue
            try:
                records.append(ErrorRecord.from_dict(data))
            except (KeyError, ValueError):
                continue
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    def _ensure_index(self) -> "OrderedDict[str, float]":
        if self._index is None:
            self._index = OrderedDict((r.id, r.created_at) for r in self._load_all())
        return self._index

    def _trim_overflow(self) -> int:
        index = self._ensure_index()
        removed = 0
        while len(index) > self.max_entries:
            record_id, _created = index.popitem(last=False)
            try:
                self._path(record_id).unlink()
            except FileNotFoundError:
                pass
            removed += 1
        if removed:
            _ranking_event("state", phase="quarantine", kind="pruned", removed=removed)
        return removed

    def enqueue(
        self,
        kind: ErrorKind | str,
        payload: Dict[str, Any],
        *,
        action: ErrorAction | str = ErrorAction.QUARANTINE,
        error: str = "",
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ErrorRecord:
        kind = ErrorKind(kind)
        now = self._clock()
        with self._lock:
            record = ErrorRecord(
                id=f"{kind.value}_{time.time_ns()}_{next(self._sequence):06d}",
                kind=kind,
                payload=payload,
                action=ErrorAction(action),
                created_at=now,
                last_updated_at=now,
                error=error,
                error_code=error_code,
                metadata=dict(metadata or {}),
            )
            index = self._ensure_index()
            self._write(record)
            index[record.id] = record.created_at
            self._trim_overflow()

        self.telemetry.increment("quarantine_entries")
        _ranking_event(
            "state",
            phase="quarantine",
            kind="enqueued",
            id=record.id,
            error_kind=kind.value,
            action=record.action.value,
            error=error,
        )
        return record

    def get(self, record_id: str) -> Optional[ErrorRecord]:
        data = load_json_file(self._path(record_id))
        if not isinstance(data, dict):
            return None
        return ErrorRecord.from_dict(data)

    def list(
        self,
        *,
        kind: ErrorKind | str | None = None,
        action: ErrorAction | str | None = None,
        offset: int = 0,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[ErrorRecord]:
        with self._lock:
            records = self._load_all()
        if kind is not None:
            records = [r for r in records if r.kind == ErrorKind(kind)]
        if action is not None:
            records = [r for r in records if r.action == ErrorAction(action)]
        if newest_first:
            records.reverse()
        end = None if limit is None else offset + limit
        return records[offset:end]

    def update(self, record_id: str, **changes: Any) -> Optional[ErrorRecord]:
        with self._lock:
            record = self.get(record_id)
            if record is None:
                return None
            for key, value in changes.items():
                if key == "action":
                    value = ErrorAction(value)
                elif key == "kind":
                    value = ErrorKind(value)
                elif not hasattr(record, key) or key == "id":
                    raise AttributeError(f"ErrorRecord has no updatable field {key!r}")
                setattr(record, key, value)
            record.last_updated_at = self._clock()
            self._write(record)
            return record

    def remove(self, record_id: str) -> bool:
        with self._lock:
            if self._index is not None:
                self._index.pop(record_id, None)
            try:
                self._path(record_id).unlink()
            except FileNotFoundError:
                return False
        return True

    def clear(self) -> int:
        with self._lock:
            records = self._load_all()
            for record in records:
                self.remove(record.id)
        return len(records)

    def prune(self) -> int:
        """Re-read the queue from disk and drop the oldest entries over capacity.

        Picks up files written by other processes; ``enqueue`` trims against
        the in-memory index instead.
        """

        with self._lock:
            self._index = None
            return self._trim_overflow()

    def stats(self) -> Dict[str, Any]:
        records = self.list()
        by_kind: Dict[str, int] = {}
        by_action: Dict[str, int] = {}
        for record in records:
            by_kind[record.kind.value] = by_kind.get(record.kind.value, 0) + 1
            by_action[record.action.value] = by_action.get(record.action.value, 0) + 1
        return {
            "total": len(records),
            "max_entries": self.max_entries,
            "by_kind": by_kind,
            "by_action": by_action,
            "oldest_created_at": records[0].created_at if records else None,
            "newest_created_at": records[-1].created_at if records else None,
            "directory": os.fspath(self.directory),
        }

    def reprocess(self, action: ErrorAction | str, repair_fn: RepairFn) -> Dict[str, int]:
        """Run ``repair_fn`` on every entry with ``action``.

        Repaired entries are removed. Failed entries keep their payload, gain
        an attempt and a history line, and move to the suggested next action.
        """

        selected = self.list(action=action)
        fixed = 0
        failed = 0
        for record in selected:
            try:
                result = repair_fn(record)
            except Exception as exc:  # noqa: BLE001
                result = RepairResult(success=False, error=str(exc))

            if result.success:
                self.remove(record.id)
                fixed += 1
                _ranking_event(
                    "state",
                    phase="quarantine",
                    kind="repaired",
                    id=record.id,
                    attempts=record.attempts + 1,
                )
                continue

            failed += 1
            next_action = result.next_action or record.action
            history = list(record.history)
            history.append(
                {
                    "attempt": record.attempts + 1,
                    "at": self._clock(),
                    "error": result.error,
                    "action": next_action.value,
                }
            )
            self.update(
                record.id,
                attempts=record.attempts + 1,
                action=next_action,
                error=result.error or record.error,
                history=history,
            )

        summary = {
            "processed": len(selected),
            "fixed": fixed,
            "failed": failed,
            "remaining": len(self.list()),
        }
        _ranking_event("state", phase="quarantine", kind="reprocessed", action=ErrorAction(action).value, **summary)
        return summary


__all__ = [
    "ErrorKind",
    "ErrorAction",
    "ErrorRecord",
    "RepairResult",
    "QuarantineQueue",
]
