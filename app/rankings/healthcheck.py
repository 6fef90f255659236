from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from . import config
from .config_validation import validate_runtime_config
from .kv_store import KeyValueStore, build_store
from .logging_utils import _ranking_event
from .quarantine import QuarantineQueue
from .utils import disk_has_room, ensure_dirs, log_line


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def run_health_checks(
    entrypoint: str = "cli",
    *,
    store: Optional[KeyValueStore] = None,
    quarantine: Optional[QuarantineQueue] = None,
) -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    try:
        validate_runtime_config(entrypoint or "cli")
        checks["config"] = {"ok": True}
    except ValueError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    ensure_dirs()
    fs_ok = disk_has_room(config.MIN_FREE_MB, config.DATA_DIR)
    checks["filesystem"] = {
        "ok": fs_ok,
        "data_dir": str(config.DATA_DIR),
        "min_free_mb": config.MIN_FREE_MB,
    }

    try:
        (store or build_store()).ping()
        checks["persistence"] = {"ok": True, "backend": config.PERSISTENCE_BACKEND}
    except Exception as exc:  # noqa: BLE001
        checks["persistence"] = {"ok": False, "backend": config.PERSISTENCE_BACKEND, "error": str(exc)}

    # A full quarantine queue means records are being pruned unseen; report
    # it but do not fail the service over it.
    try:
        stats = (quarantine or QuarantineQueue()).stats()
        checks["quarantine"] = {
            "ok": stats["total"] < stats["max_entries"],
            "total": stats["total"],
            "max_entries": stats["max_entries"],
        }
    except Exception as exc:  # noqa: BLE001
        checks["quarantine"] = {"ok": False, "error": str(exc)}

    strict = entrypoint == "cli"
    overall_ok = all(
        check.get("ok", False)
        for name, check in checks.items()
        if strict or name != "quarantine"
    )

    _ranking_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        ok=overall_ok,
        checks=checks,
    )

    return HealthResult(ok=overall_ok, checks=checks)


if __name__ == "__main__":  # pragma: no cover
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    raise SystemExit(0 if result.ok else 1)
