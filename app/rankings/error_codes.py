"""Error code taxonomy and exception classes for crawl and query failures.

Codes are persisted into quarantine records and included in structured logs
so an operator can tell why a cycle, a record, or a request failed.
"""
from __future__ import annotations

from typing import Any, Optional


class ErrorCode:
    NETWORK = "network_error"
    TIMEOUT = "timeout"
    DNS = "dns_failure"
    RATE_LIMITED = "rate_limited"
    HTTP_401 = "http_401_unauthorised"
    HTTP_403 = "http_403_forbidden"
    HTTP_4XX = "http_4xx"
    HTTP_429 = "http_429_too_many_requests"
    HTTP_5XX = "http_5xx"
    SESSION_CLOSED = "session_closed"
    SITE_STRUCTURE = "site_structure_changed"
    VALIDATION = "validation"
    MISSING_FIELD = "missing_required_field"
    INCONSISTENCY = "data_inconsistency"
    PERSISTENCE = "persistence_error"
    UNKNOWN_SCOPE = "unknown_scope"
    INTERNAL = "internal_error"


class RankingsError(Exception):
    """Base class for classified failures."""

    error_code: str = ErrorCode.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code
        if retryable is not None:
            self.retryable = retryable
        self.http_status = http_status

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": str(self),
            "http_status": self.http_status,
        }


class CrawlError(RankingsError):
    """Transient browser or network failure during a crawl cycle."""

    error_code = ErrorCode.NETWORK
    retryable = True


class SessionClosedError(CrawlError):
    """The browser page, context, or target went away mid-cycle."""

    error_code = ErrorCode.SESSION_CLOSED


class SourcePolicyError(RankingsError):
    """The crawl target refuses access; fatal for the cycle."""

    error_code = ErrorCode.HTTP_403


class ValidationError(RankingsError):
    error_code = ErrorCode.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, value: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value


class MissingRequiredField(ValidationError):
    error_code = ErrorCode.MISSING_FIELD


class DataInconsistency(ValidationError):
    error_code = ErrorCode.INCONSISTENCY


class PersistenceError(RankingsError):
    error_code = ErrorCode.PERSISTENCE
    retryable = True


class RateLimitExceeded(RankingsError):
    error_code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UnknownScopeError(RankingsError):
    error_code = ErrorCode.UNKNOWN_SCOPE


def classify_http_status(status: Optional[int]) -> str:
    if status is None:
        return ErrorCode.INTERNAL
    if status == 401:
        return ErrorCode.HTTP_401
    if status == 403:
        return ErrorCode.HTTP_403
    if status == 429:
        return ErrorCode.HTTP_429
    if 400 <= status < 500:
        return ErrorCode.HTTP_4XX
    if status >= 500:
        return ErrorCode.HTTP_5XX
    return ErrorCode.INTERNAL


def error_for_http_status(status: int, url: str) -> RankingsError | None:
    """Map a navigation status onto the crawl error taxonomy."""

    if status < 400:
        return None
    code = classify_http_status(status)
    message = f"Source returned HTTP {status} for {url}"
    if status in (401, 403):
        return SourcePolicyError(message, error_code=code, http_status=status)
    if status == 429 or status >= 500:
        return CrawlError(message, error_code=code, http_status=status)
    return CrawlError(message, error_code=code, http_status=status, retryable=False)


__all__ = [
    "ErrorCode",
    "RankingsError",
    "CrawlError",
    "SessionClosedError",
    "SourcePolicyError",
    "ValidationError",
    "MissingRequiredField",
    "DataInconsistency",
    "PersistenceError",
    "RateLimitExceeded",
    "UnknownScopeError",
    "classify_http_status",
    "error_for_http_status",
]
