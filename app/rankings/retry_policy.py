from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from . import config
from .error_codes import ErrorCode, RankingsError
from .logging_utils import _ranking_event
from .telemetry import Telemetry

T = TypeVar("T")

RETRYABLE_ERROR_CODES = {
    ErrorCode.NETWORK,
    ErrorCode.TIMEOUT,
    ErrorCode.DNS,
    ErrorCode.RATE_LIMITED,
    ErrorCode.HTTP_429,
    ErrorCode.HTTP_5XX,
    ErrorCode.SESSION_CLOSED,
    ErrorCode.PERSISTENCE,
}

NON_RETRYABLE_ERROR_CODES = {
    ErrorCode.HTTP_401,
    ErrorCode.HTTP_403,
    ErrorCode.HTTP_4XX,
    ErrorCode.SITE_STRUCTURE,
    ErrorCode.VALIDATION,
    ErrorCode.MISSING_FIELD,
    ErrorCode.INCONSISTENCY,
    ErrorCode.UNKNOWN_SCOPE,
}

# Substrings of transient failures raised by requests, sockets and Playwright.
TRANSIENT_MESSAGE_MARKERS = (
    "connection reset",
    "connection refused",
    "connection aborted",
    "econnreset",
    "econnrefused",
    "etimedout",
    "esockettimedout",
    "enotfound",
    "timed out",
    "timeout",
    "name or service not known",
    "temporary failure in name resolution",
    "rate limit",
    "too many requests",
    "target closed",
    "target crashed",
    "has been closed",
    "execution context was destroyed",
    "socket hang up",
    "net::err_",
)


def is_retryable_error(exc: BaseException) -> bool:
    """Return ``True`` when *exc* matches a known transient signature."""

    if isinstance(exc, RankingsError):
        code = exc.error_code
        if code in NON_RETRYABLE_ERROR_CODES:
            return False
        status = exc.http_status
        if status is not None and (status == 429 or status >= 500):
            return True
        return exc.retryable or code in RETRYABLE_ERROR_CODES

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True

    status = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(status, int) and (status == 429 or status >= 500):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings.

    ``max_retries`` counts retries after the first call, so the operation runs
    at most ``max_retries + 1`` times.
    """

    max_retries: int = field(default_factory=lambda: config.RETRY_MAX_RETRIES)
    initial_delay: float = field(default_factory=lambda: config.RETRY_INITIAL_DELAY_SECONDS)
    max_delay: float = field(default_factory=lambda: config.RETRY_MAX_DELAY_SECONDS)
    backoff_factor: float = field(default_factory=lambda: config.RETRY_BACKOFF_FACTOR)
    jitter_ratio: float = field(default_factory=lambda: config.RETRY_JITTER_RATIO)
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    # Optional bound on the whole run including sleeps; ``None`` disables it.
    deadline_seconds: Optional[float] = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def base_delay(self, retry_index: int) -> float:
        return self.initial_delay * self.backoff_factor ** max(0, retry_index - 1)


def compute_backoff_seconds(
    retry_index: int,
    policy: RetryPolicy | None = None,
    *,
    rng: random.Random | None = None,
) -> float:
    """Return the jittered, clamped delay before retry ``retry_index`` (1-based)."""

    policy = policy or RetryPolicy()
    base = policy.base_delay(retry_index)
    spread = policy.jitter_ratio * base / 2
    offset = (rng or random).uniform(-spread, spread) if spread > 0 else 0.0
    return max(0.0, min(base + offset, policy.max_delay))


class RetryEngine:
    """Run operations in a bounded retry loop with classified failures."""

    def __init__(
        self,
        *,
        policy: RetryPolicy | None = None,
        telemetry: Telemetry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.telemetry = telemetry or Telemetry()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def run(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy | None = None,
        *,
        label: str = "operation",
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        policy = policy or self.policy
        started = self._clock()
        last_error: BaseException | None = None
        attempt = 1

        while attempt <= policy.max_attempts:
            try:
                return operation()
            except Exception as exc:  # noqa: BLE001
                last_error = exc

            retryable = policy.is_retryable(last_error)
            if not retryable:
                _ranking_event(
                    "state",
                    phase="retry_decision",
                    kind="non_retryable",
                    operation=label,
                    attempt=attempt,
                    error_code=getattr(last_error, "error_code", None),
                    error=str(last_error),
                    will_retry=False,
                )
                raise last_error

            if attempt >= policy.max_attempts:
                break

            delay = compute_backoff_seconds(attempt, policy, rng=self._rng)
            if policy.deadline_seconds is not None:
                elapsed = self._clock() - started
                if elapsed + delay > policy.deadline_seconds:
                    _ranking_event(
                        "state",
                        phase="retry_decision",
                        kind="deadline",
                        operation=label,
                        attempt=attempt,
                        elapsed=round(elapsed, 3),
                        deadline=policy.deadline_seconds,
                        will_retry=False,
                    )
                    break

            self.telemetry.increment("retry_attempt")
            _ranking_event(
                "state",
                phase="retry_decision",
                kind="retryable",
                operation=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error_code=getattr(last_error, "error_code", None),
                error=str(last_error),
                will_retry=True,
            )
            if on_retry is not None:
                on_retry(attempt, last_error)
            self._sleep(delay)
            attempt += 1

        assert last_error is not None
        self.telemetry.alert(
            "retry_exhausted",
            f"{label} failed after {attempt} attempt(s): {last_error}",
            operation=label,
            attempts=attempt,
            error_code=getattr(last_error, "error_code", None),
        )
        raise last_error


__all__ = [
    "RetryPolicy",
    "RetryEngine",
    "compute_backoff_seconds",
    "is_retryable_error",
    "RETRYABLE_ERROR_CODES",
    "NON_RETRYABLE_ERROR_CODES",
]
