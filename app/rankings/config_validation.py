from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _ranking_event
from .utils import log_line
from .validation import ValidationStrategy

Entrypoint = Literal["ui", "cli", "scheduler", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _ranking_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ValueError(message)


def _clamp(field_name: str, minimum: float, *, entrypoint: Entrypoint) -> None:
    value = getattr(config, field_name)
    if value >= minimum:
        return
    adjusted = type(value)(minimum)
    _ranking_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field_name,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field_name} < {minimum}; clamping to {adjusted}.")
    setattr(config, field_name, adjusted)


def validate_runtime_config(entrypoint: Entrypoint) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Recoverable knobs (worker counts, capacities) are clamped and logged.
    """

    for field_name in (
        "MAX_CONCURRENT_SESSIONS",
        "PREFETCH_WORKERS",
        "SEARCH_WORKERS",
        "MAX_PAGES",
        "QUARANTINE_MAX_ENTRIES",
        "SERVER_CACHE_MAX_ENTRIES",
        "QUERY_CACHE_MAX_ENTRIES",
    ):
        _clamp(field_name, 1, entrypoint=entrypoint)
    _clamp("RETRY_MAX_RETRIES", 0, entrypoint=entrypoint)
    _clamp("PERSISTENCE_MAX_RETRIES", 0, entrypoint=entrypoint)

    if config.MIN_FREE_MB < 0:
        _raise_config_error("MIN_FREE_MB must be non-negative.", entrypoint=entrypoint, error="min_free_mb_invalid")

    if not 0 < config.SIMILARITY_THRESHOLD_PERCENT <= 100:
        _raise_config_error(
            "SIMILARITY_THRESHOLD_PERCENT must be within (0, 100].",
            entrypoint=entrypoint,
            error="similarity_threshold_invalid",
        )

    if config.RANK_TOLERANCE < 0 or config.COMPARE_LIMIT < 1:
        _raise_config_error(
            "RANK_TOLERANCE must be >= 0 and COMPARE_LIMIT >= 1.",
            entrypoint=entrypoint,
            error="change_detection_invalid",
        )

    if not 0 <= config.RESET_HOUR_UTC <= 23 or not 0 <= config.RESET_WINDOW_MINUTES <= 60:
        _raise_config_error(
            "RESET_HOUR_UTC must be 0-23 and RESET_WINDOW_MINUTES 0-60.",
            entrypoint=entrypoint,
            error="reset_window_invalid",
        )

    if config.RETRY_INITIAL_DELAY_SECONDS < 0 or config.RETRY_MAX_DELAY_SECONDS < config.RETRY_INITIAL_DELAY_SECONDS:
        _raise_config_error(
            "Retry delays must satisfy 0 <= initial <= max.",
            entrypoint=entrypoint,
            error="retry_delay_invalid",
        )

    if config.RETRY_BACKOFF_FACTOR < 1 or not 0 <= config.RETRY_JITTER_RATIO <= 1:
        _raise_config_error(
            "RETRY_BACKOFF_FACTOR must be >= 1 and RETRY_JITTER_RATIO within [0, 1].",
            entrypoint=entrypoint,
            error="retry_backoff_invalid",
        )

    for field_name in ("IDENTITY_REFILL_PER_SECOND", "ROUTE_REFILL_PER_SECOND"):
        if getattr(config, field_name) <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="rate_limit_invalid",
            )

    try:
        ValidationStrategy.coerce(config.VALIDATION_STRATEGY)
    except ValueError:
        _raise_config_error(
            f"Unknown VALIDATION_STRATEGY {config.VALIDATION_STRATEGY!r}.",
            entrypoint=entrypoint,
            error="validation_strategy_invalid",
        )

    if config.PERSISTENCE_BACKEND not in {"sqlite", "http"}:
        _raise_config_error(
            f"Unknown PERSISTENCE_BACKEND {config.PERSISTENCE_BACKEND!r}.",
            entrypoint=entrypoint,
            error="persistence_backend_invalid",
        )

    if config.PERSISTENCE_BACKEND == "http" and not (
        config.KV_ACCOUNT_ID and config.KV_NAMESPACE_ID and config.KV_API_TOKEN
    ):
        _raise_config_error(
            "HTTP persistence requires CF_ACCOUNT_ID, CF_NAMESPACE_ID and CF_API_TOKEN.",
            entrypoint=entrypoint,
            error="kv_credentials_missing",
        )

    timeout_fields = [
        ("NAV_TIMEOUT_SECONDS", config.NAV_TIMEOUT_SECONDS),
        ("SELECTOR_TIMEOUT_SECONDS", config.SELECTOR_TIMEOUT_SECONDS),
        ("STEP_TIMEOUT_SECONDS", config.STEP_TIMEOUT_SECONDS),
    ]
    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
            )


__all__ = ["validate_runtime_config", "Entrypoint"]
