"""Counters, alerts and per-run telemetry."""

from __future__ import annotations

import json
import threading
import time
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .logging_utils import _ranking_event


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


class Telemetry:
    """Thread-safe metric counters plus a bounded list of raised alerts."""

    def __init__(self, max_alerts: int = 100) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._alerts: List[Dict[str, Any]] = []
        self._max_alerts = max_alerts

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def alert(self, name: str, message: str, **fields: Any) -> None:
        entry = {"name": name, "message": message, "at": time.time(), **fields}
        with self._lock:
            self._alerts.append(entry)
            if len(self._alerts) > self._max_alerts:
                del self._alerts[0]
            self._counters[name] += 1
        _ranking_event("alert", name=name, message=message, **fields)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def alerts(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(a) for a in self._alerts if name is None or a["name"] == name]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {"counters": dict(self._counters), "alerts": [dict(a) for a in self._alerts]}


class RunTelemetry:
    """Collect per-scope outcomes of one refresh-all run."""

    def __init__(self, mode: str) -> None:
        self.run_id = f"{_ts()}_{uuid.uuid4().hex[:8]}"
        self.mode = mode
        self.started_at = time.time()
        self.entries: List[Dict[str, Any]] = []
        self.summary: Dict[str, Any] = defaultdict(int)
        self._lock = threading.Lock()

    def add(self, status: str, reason: str, meta: Dict[str, Any]) -> None:
        with self._lock:
            self.entries.append({"status": status, "reason": reason, **meta})
            self.summary[f"count_{status}"] += 1

    def finalize(self, extra: Optional[Dict[str, Any]] = None) -> Path:
        payload = {
            "run_id": self.run_id,
            "mode": self.mode,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "summary": dict(self.summary),
            "entries": self.entries,
            **(extra or {}),
        }
        config.RUNS_DIR.mkdir(parents=True, exist_ok=True)
        path = config.RUNS_DIR / f"run_{self.run_id}.json"
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        return path


__all__ = ["Telemetry", "RunTelemetry"]
