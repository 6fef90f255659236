from __future__ import annotations

from pathlib import Path

import pytest

from app.rankings import config, healthcheck
from app.rankings.error_codes import PersistenceError
from app.rankings.quarantine import ErrorKind, QuarantineQueue
from tests.test_crawler import FakeStore, _configure_temp_paths


class BrokenStore(FakeStore):
    def ping(self) -> None:
        raise PersistenceError("database is locked")


@pytest.fixture(autouse=True)
def _temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)


def test_run_health_checks_happy_path() -> None:
    result = healthcheck.run_health_checks(entrypoint="ui")

    assert result.ok is True
    assert result.checks["config"]["ok"] is True
    assert result.checks["filesystem"]["ok"] is True
    assert result.checks["persistence"] == {"ok": True, "backend": "sqlite"}
    assert result.checks["quarantine"]["total"] == 0
    assert config.DB_PATH.exists()


def test_run_health_checks_handles_invalid_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MIN_FREE_MB", -1)

    result = healthcheck.run_health_checks(entrypoint="cli")

    assert result.ok is False
    assert result.checks["config"]["ok"] is False


def test_persistence_failure_is_unhealthy() -> None:
    result = healthcheck.run_health_checks(entrypoint="ui", store=BrokenStore())

    assert result.ok is False
    assert result.checks["persistence"]["error"] == "database is locked"


def test_full_quarantine_only_fails_cli(tmp_path: Path) -> None:
    queue = QuarantineQueue(tmp_path / "q", max_entries=1)
    queue.enqueue(ErrorKind.VALIDATION, {"field": "rank"})

    ui = healthcheck.run_health_checks(entrypoint="ui", store=FakeStore(), quarantine=queue)
    cli = healthcheck.run_health_checks(entrypoint="cli", store=FakeStore(), quarantine=queue)

    assert ui.checks["quarantine"]["ok"] is False
    assert ui.ok is True
    assert cli.ok is False
