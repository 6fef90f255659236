from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from app.rankings import config, prefetch
from app.rankings.models import Scope
from tests.test_crawler import _configure_temp_paths

SCOPES = [Scope(), Scope("EU", "EU011"), Scope("EU", "EU012")]


@pytest.fixture(autouse=True)
def _temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)


def test_refresh_all_scopes_passes_force_flag_and_counts() -> None:
    seen: list[tuple[str, bool]] = []

    def refresh_one(scope: Scope, force: bool) -> str:
        seen.append((scope.scope_id, force))
        return "stable"

    status = prefetch.refresh_all_scopes(SCOPES, refresh_one, force_update=True, max_workers=2)

    assert status["started"] is True
    assert sorted(seen) == sorted((s.scope_id, True) for s in SCOPES)
    assert status["summary"] == {"count_ok": 3}
    assert status["errors"] == []

    run = json.loads(Path(status["run_file"]).read_text(encoding="utf-8"))
    assert run["mode"] == "force"
    assert {entry["reason"] for entry in run["entries"]} == {"stable"}


def test_active_run_is_not_started_twice() -> None:
    prefetch.save_status(is_running=True, last_started=time.time())

    status = prefetch.refresh_all_scopes(SCOPES, lambda scope, force: "crawl")

    assert status["started"] is False
    assert status["reason"] == "already_running"


def test_stale_running_flag_is_ignored() -> None:
    prefetch.save_status(is_running=True, last_started=time.time() - prefetch.STALE_RUN_SECONDS - 1)

    status = prefetch.refresh_all_scopes(SCOPES, lambda scope, force: "crawl")

    assert status["started"] is True
    assert status["completed_servers"] == 3


def test_load_status_defaults_when_file_missing() -> None:
    assert not config.PREFETCH_STATUS_FILE.exists()
    status = prefetch.load_status()
    assert status["is_running"] is False
    assert status["errors"] == []
