from pathlib import Path

from app.rankings import logging_utils, utils
from app.rankings.telemetry import RunTelemetry, Telemetry
from tests.test_crawler import _configure_temp_paths


def test_ranking_event_label_and_phase(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._ranking_event("state", phase="crawl", kind="start", scope="EU/EU011")

    assert events
    line = events[-1]
    assert line.startswith("[RANKINGS][STATE]")
    assert "phase='crawl'" in line
    assert "scope='EU/EU011'" in line


def test_phase_is_used_as_label_when_missing(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._ranking_event(phase="paginate", pages=2)

    assert events[-1] == "[RANKINGS][PAGINATE] pages=2"


def test_ranking_event_never_raises(monkeypatch):
    def boom(_msg):
        raise OSError("disk full")

    monkeypatch.setattr(logging_utils, "log_line", boom)
    logging_utils._ranking_event("error", phase="crawl")


def test_log_line_writes_to_current_log_file(tmp_path: Path, monkeypatch):
    _configure_temp_paths(tmp_path, monkeypatch)

    utils.log_line("hello rankings")

    log_path = utils.get_current_log_path()
    for handler in utils.LOGGER.handlers:
        handler.flush()
    assert "hello rankings" in log_path.read_text(encoding="utf-8")


def test_setup_run_logger_rotates_file(tmp_path: Path, monkeypatch):
    _configure_temp_paths(tmp_path, monkeypatch)

    path = utils.setup_run_logger("refresh")

    assert path.parent == tmp_path / "data" / "logs"
    assert path.name.startswith("refresh_")
    assert utils.get_current_log_path() == path


def test_telemetry_alert_increments_counter(monkeypatch):
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: None)
    telemetry = Telemetry(max_alerts=2)

    for i in range(3):
        telemetry.alert("crawl_repeated_failure", f"failure {i}", scope="global")

    assert telemetry.counter("crawl_repeated_failure") == 3
    assert [a["message"] for a in telemetry.alerts()] == ["failure 1", "failure 2"]
    assert telemetry.snapshot()["counters"] == {"crawl_repeated_failure": 3}


def test_run_telemetry_writes_run_file(tmp_path: Path, monkeypatch):
    _configure_temp_paths(tmp_path, monkeypatch)
    run = RunTelemetry(mode="scheduled")
    run.add("ok", "crawl", {"scope": "global"})
    run.add("failed", "HTTP 403", {"scope": "EU/EU011"})

    path = run.finalize({"errors": []})

    assert path.exists()
    assert run.summary == {"count_ok": 1, "count_failed": 1}
