from __future__ import annotations

import random

import pytest
import requests

from app.rankings import retry_policy, utils
from app.rankings.error_codes import (
    CrawlError,
    ErrorCode,
    PersistenceError,
    SessionClosedError,
    SourcePolicyError,
    ValidationError,
)
from app.rankings.retry_policy import RetryEngine, RetryPolicy, compute_backoff_seconds
from app.rankings.telemetry import Telemetry
from tests.test_crawler import _configure_temp_paths


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(label: str = "", **fields: object) -> None:
        events.append((label, fields))

    monkeypatch.setattr(retry_policy, "_ranking_event", _record)
    return events


@pytest.mark.parametrize(
    "exc, expected",
    [
        (CrawlError("boom"), True),
        (SessionClosedError("Target closed"), True),
        (CrawlError("HTTP 503", error_code=ErrorCode.HTTP_5XX, http_status=503), True),
        (PersistenceError("KV 429", http_status=429), True),
        (SourcePolicyError("HTTP 403", http_status=403), False),
        (CrawlError("layout", error_code=ErrorCode.SITE_STRUCTURE, retryable=False), False),
        (ValidationError("bad rank", field="rank"), False),
        (ConnectionError("reset"), True),
        (TimeoutError(), True),
        (RuntimeError("read ECONNRESET"), True),
        (RuntimeError("socket hang up"), True),
        (RuntimeError("division by zero"), False),
    ],
)
def test_is_retryable_error(exc: BaseException, expected: bool) -> None:
    assert retry_policy.is_retryable_error(exc) is expected


def test_requests_error_with_server_status_is_retryable() -> None:
    response = requests.Response()
    response.status_code = 502
    exc = requests.HTTPError("bad gateway", response=response)
    assert retry_policy.is_retryable_error(exc) is True


@pytest.mark.parametrize("retry_index, base", [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0)])
def test_backoff_stays_within_jitter_bounds(retry_index: int, base: float) -> None:
    policy = RetryPolicy(initial_delay=1.0, backoff_factor=2.0, max_delay=30.0, jitter_ratio=0.1)
    rng = random.Random(7)
    for _ in range(200):
        delay = compute_backoff_seconds(retry_index, policy, rng=rng)
        assert base * 0.95 <= delay <= base * 1.05


def test_backoff_is_clamped_to_max_delay() -> None:
    policy = RetryPolicy(initial_delay=1.0, backoff_factor=2.0, max_delay=30.0, jitter_ratio=0.1)
    assert compute_backoff_seconds(10, policy, rng=random.Random(1)) == 30.0


def test_engine_retries_then_succeeds(event_recorder: list[tuple[str, dict]]) -> None:
    sleeps: list[float] = []
    telemetry = Telemetry()
    engine = RetryEngine(
        policy=RetryPolicy(max_retries=5, jitter_ratio=0.0),
        telemetry=telemetry,
        sleep=sleeps.append,
    )
    calls = {"n": 0}

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise CrawlError("connection reset")
        return "ok"

    assert engine.run(flaky, label="flaky") == "ok"
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]
    assert telemetry.counter("retry_attempt") == 2
    kinds = [fields["kind"] for _, fields in event_recorder]
    assert kinds == ["retryable", "retryable"]


def test_engine_exhaustion_raises_last_error_and_alerts() -> None:
    telemetry = Telemetry()
    engine = RetryEngine(
        policy=RetryPolicy(max_retries=2, initial_delay=0.0),
        telemetry=telemetry,
        sleep=lambda _s: None,
    )
    calls = {"n": 0}

    def always_fails() -> None:
        calls["n"] += 1
        raise CrawlError(f"attempt {calls['n']}")

    with pytest.raises(CrawlError, match="attempt 3"):
        engine.run(always_fails, label="doomed")

    assert calls["n"] == 3
    alerts = telemetry.alerts("retry_exhausted")
    assert len(alerts) == 1
    assert alerts[0]["attempts"] == 3
    assert alerts[0]["operation"] == "doomed"


def test_engine_events_reach_the_log(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    engine = RetryEngine(
        policy=RetryPolicy(max_retries=1, initial_delay=0.0),
        telemetry=Telemetry(),
        sleep=lambda _s: None,
    )

    def fails() -> None:
        raise CrawlError("connection reset")

    with pytest.raises(CrawlError, match="connection reset"):
        engine.run(fails, label="crawl:global")

    for handler in utils.LOGGER.handlers:
        handler.flush()
    logged = utils.get_current_log_path().read_text(encoding="utf-8")
    assert "kind='retryable'" in logged
    assert "operation='crawl:global'" in logged
    assert "[RANKINGS][ALERT]" in logged


def test_non_retryable_error_is_raised_immediately(event_recorder: list[tuple[str, dict]]) -> None:
    sleeps: list[float] = []
    engine = RetryEngine(sleep=sleeps.append)
    calls = {"n": 0}

    def forbidden() -> None:
        calls["n"] += 1
        raise SourcePolicyError("HTTP 403", http_status=403)

    with pytest.raises(SourcePolicyError):
        engine.run(forbidden)

    assert calls["n"] == 1
    assert sleeps == []
    assert event_recorder[-1][1]["kind"] == "non_retryable"


def test_deadline_stops_retrying_early() -> None:
    clock = {"now": 0.0}

    def sleep(seconds: float) -> None:
        clock["now"] += seconds

    engine = RetryEngine(
        policy=RetryPolicy(max_retries=10, initial_delay=4.0, jitter_ratio=0.0, deadline_seconds=10.0),
        sleep=sleep,
        clock=lambda: clock["now"],
    )
    calls = {"n": 0}

    def slow_failure() -> None:
        calls["n"] += 1
        raise CrawlError("timeout")

    with pytest.raises(CrawlError):
        engine.run(slow_failure)

    # Delays 4 then 8: the second would overrun the 10 second budget.
    assert calls["n"] == 2
    assert clock["now"] == 4.0
