from pathlib import Path

import pytest

from app.rankings import config
from app.rankings.config_validation import validate_runtime_config
from tests.test_crawler import _configure_temp_paths


@pytest.fixture(autouse=True)
def _temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)


def test_defaults_are_valid() -> None:
    validate_runtime_config("tests")


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("SIMILARITY_THRESHOLD_PERCENT", 0, "SIMILARITY_THRESHOLD_PERCENT"),
        ("SIMILARITY_THRESHOLD_PERCENT", 101, "SIMILARITY_THRESHOLD_PERCENT"),
        ("RESET_HOUR_UTC", 24, "RESET_HOUR_UTC"),
        ("RETRY_BACKOFF_FACTOR", 0.5, "RETRY_BACKOFF_FACTOR"),
        ("RETRY_JITTER_RATIO", 1.5, "RETRY_JITTER_RATIO"),
        ("IDENTITY_REFILL_PER_SECOND", 0, "IDENTITY_REFILL_PER_SECOND"),
        ("VALIDATION_STRATEGY", "lenient", "VALIDATION_STRATEGY"),
        ("PERSISTENCE_BACKEND", "redis", "PERSISTENCE_BACKEND"),
        ("STEP_TIMEOUT_SECONDS", 0, "STEP_TIMEOUT_SECONDS"),
        ("MIN_FREE_MB", -1, "MIN_FREE_MB"),
    ],
)
def test_blocking_misconfiguration_raises(monkeypatch: pytest.MonkeyPatch, field: str, value, message: str) -> None:
    monkeypatch.setattr(config, field, value)
    with pytest.raises(ValueError, match=message):
        validate_runtime_config("cli")


def test_http_backend_requires_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "PERSISTENCE_BACKEND", "http")
    monkeypatch.setattr(config, "KV_ACCOUNT_ID", "acct")
    monkeypatch.setattr(config, "KV_NAMESPACE_ID", "")
    monkeypatch.setattr(config, "KV_API_TOKEN", "token")

    with pytest.raises(ValueError, match="CF_NAMESPACE_ID"):
        validate_runtime_config("scheduler")

    monkeypatch.setattr(config, "KV_NAMESPACE_ID", "ns")
    validate_runtime_config("scheduler")


def test_worker_counts_are_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MAX_CONCURRENT_SESSIONS", 0)
    monkeypatch.setattr(config, "RETRY_MAX_RETRIES", -2)

    validate_runtime_config("ui")

    assert config.MAX_CONCURRENT_SESSIONS == 1
    assert config.RETRY_MAX_RETRIES == 0
