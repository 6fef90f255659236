"""Configuration constants for the leaderboard harvester."""
from __future__ import annotations

import os
from pathlib import Path


def _env_flag(env_var: str, default: str) -> bool:
    return os.getenv(env_var, default).strip().lower() not in {"0", "false", ""}


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


def _parse_float(env_var: str, default: float) -> float:
    try:
        return float(os.getenv(env_var, str(default)))
    except ValueError:
        return default


def _parse_int(env_var: str, default: int) -> int:
    try:
        return int(os.getenv(env_var, str(default)))
    except ValueError:
        return default


DATA_DIR: Path = Path(os.getenv("RANKINGS_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
DB_PATH: Path = DATA_DIR / "rankings.db"
QUARANTINE_DIR: Path = DATA_DIR / "error_queue"
SCRAPED_PAGES_DIR: Path = DATA_DIR / "scraped_pages"
RUNS_DIR: Path = DATA_DIR / "runs"
EXPORTS_DIR: Path = DATA_DIR / "exports"
PREFETCH_STATUS_FILE: Path = DATA_DIR / "prefetch_status.json"
# Optional JSON override for the region/server registry.
SCOPES_FILE: Path = DATA_DIR / "scopes.json"

MIN_FREE_MB: int = _parse_int("MIN_FREE_MB", 100)

RANKING_URL: str = os.getenv("RANKINGS_SOURCE_URL", "https://forum.mir4global.com/rank?ranktype=1")
ROW_SELECTOR: str = os.getenv("RANKINGS_ROW_SELECTOR", "tr.list_article")
LOAD_MORE_SELECTOR: str = os.getenv("RANKINGS_LOAD_MORE_SELECTOR", "div.btn_more a, a.btn_more")
COOKIE_ACCEPT_SELECTOR: str = os.getenv("RANKINGS_COOKIE_SELECTOR", "button.btn_accept_cookies")

# Playwright timeouts (seconds)
NAV_TIMEOUT_SECONDS: int = _parse_timeout_seconds("RANKINGS_NAV_TIMEOUT_SECONDS", 60)
# Waiting for the reveal control to appear.
SELECTOR_TIMEOUT_SECONDS: int = _parse_timeout_seconds("RANKINGS_SELECTOR_TIMEOUT_SECONDS", 5)
# Waiting for the row count to grow after a reveal click.
STEP_TIMEOUT_SECONDS: int = _parse_timeout_seconds("RANKINGS_STEP_TIMEOUT_SECONDS", 10)
SETTLE_SECONDS: float = _parse_float("RANKINGS_SETTLE_SECONDS", 1.0)
MAX_PAGES: int = _parse_int("RANKINGS_MAX_PAGES", 10)
SAVE_RAW_PAGES: bool = _env_flag("RANKINGS_SAVE_RAW_PAGES", "0")
# Saved page dumps and error screenshots older than this are removed by cleanup.
RAW_PAGE_MAX_AGE_SECONDS: int = _parse_int("RANKINGS_RAW_PAGE_MAX_AGE_SECONDS", 3600)

# Browser sessions are heavyweight; cap them across all crawl cycles.
MAX_CONCURRENT_SESSIONS: int = _parse_int("RANKINGS_MAX_CONCURRENT_SESSIONS", 2)
PREFETCH_WORKERS: int = _parse_int("RANKINGS_PREFETCH_WORKERS", 2)
SEARCH_WORKERS: int = _parse_int("RANKINGS_SEARCH_WORKERS", 4)

# Cache tiers
MAIN_CACHE_TTL_SECONDS: float = _parse_float("RANKINGS_MAIN_CACHE_TTL_SECONDS", 6 * 3600)
SERVER_CACHE_TTL_SECONDS: float = _parse_float("RANKINGS_SERVER_CACHE_TTL_SECONDS", 6 * 3600)
QUERY_CACHE_TTL_SECONDS: float = _parse_float("RANKINGS_QUERY_CACHE_TTL_SECONDS", 300)
SERVER_CACHE_MAX_ENTRIES: int = _parse_int("RANKINGS_SERVER_CACHE_MAX_ENTRIES", 200)
QUERY_CACHE_MAX_ENTRIES: int = _parse_int("RANKINGS_QUERY_CACHE_MAX_ENTRIES", 50)

# Retry engine defaults
RETRY_MAX_RETRIES: int = _parse_int("RANKINGS_RETRY_MAX_RETRIES", 5)
RETRY_INITIAL_DELAY_SECONDS: float = _parse_float("RANKINGS_RETRY_INITIAL_DELAY_SECONDS", 1.0)
RETRY_MAX_DELAY_SECONDS: float = _parse_float("RANKINGS_RETRY_MAX_DELAY_SECONDS", 30.0)
RETRY_BACKOFF_FACTOR: float = _parse_float("RANKINGS_RETRY_BACKOFF_FACTOR", 2.0)
RETRY_JITTER_RATIO: float = _parse_float("RANKINGS_RETRY_JITTER_RATIO", 0.1)
PERSISTENCE_MAX_RETRIES: int = _parse_int("RANKINGS_PERSISTENCE_MAX_RETRIES", 3)
# Whole-cycle deadline; 0 disables it.
CRAWL_CYCLE_DEADLINE_SECONDS: float = _parse_float("RANKINGS_CRAWL_CYCLE_DEADLINE_SECONDS", 600.0)
# Alert once a scope fails more than this many cycles in a row.
CONSECUTIVE_FAILURE_ALERT_THRESHOLD: int = _parse_int("RANKINGS_CONSECUTIVE_FAILURE_ALERT_THRESHOLD", 2)

# Rate limiter
IDENTITY_BUCKET_CAPACITY: float = _parse_float("RANKINGS_IDENTITY_BUCKET_CAPACITY", 60.0)
IDENTITY_REFILL_PER_SECOND: float = _parse_float("RANKINGS_IDENTITY_REFILL_PER_SECOND", 1.0)
ROUTE_BUCKET_CAPACITY: float = _parse_float("RANKINGS_ROUTE_BUCKET_CAPACITY", 300.0)
ROUTE_REFILL_PER_SECOND: float = _parse_float("RANKINGS_ROUTE_REFILL_PER_SECOND", 5.0)
# Tighter per-route buckets for expensive operations.
ROUTE_BUCKET_OVERRIDES: dict[str, tuple[float, float]] = {
    "rankings_refresh": (5.0, 5.0 / 3600),
    "cache_clear": (10.0, 10.0 / 3600),
}
BUCKET_IDLE_MAX_AGE_SECONDS: float = _parse_float("RANKINGS_BUCKET_IDLE_MAX_AGE_SECONDS", 3600.0)
TRUSTED_IDENTITIES: frozenset[str] = frozenset(
    item.strip()
    for item in os.getenv("RANKINGS_TRUSTED_IDENTITIES", "127.0.0.1,::1,localhost").split(",")
    if item.strip()
)
RATE_LIMIT_ENABLED: bool = _env_flag("RANKINGS_RATE_LIMIT_ENABLED", "1")

# Change detection
SIMILARITY_THRESHOLD_PERCENT: float = _parse_float("RANKINGS_SIMILARITY_THRESHOLD_PERCENT", 80.0)
RANK_TOLERANCE: int = _parse_int("RANKINGS_RANK_TOLERANCE", 3)
COMPARE_LIMIT: int = _parse_int("RANKINGS_COMPARE_LIMIT", 100)
# Daily leaderboard reset window, UTC.
RESET_HOUR_UTC: int = _parse_int("RANKINGS_RESET_HOUR_UTC", 4)
RESET_WINDOW_MINUTES: int = _parse_int("RANKINGS_RESET_WINDOW_MINUTES", 15)

# Quarantine queue
QUARANTINE_MAX_ENTRIES: int = _parse_int("RANKINGS_QUARANTINE_MAX_ENTRIES", 1000)
VALIDATION_STRATEGY: str = os.getenv("RANKINGS_VALIDATION_STRATEGY", "quarantine").strip().lower()

# Persistence backend: "sqlite" (local) or "http" (Cloudflare KV REST API).
PERSISTENCE_BACKEND: str = os.getenv("RANKINGS_PERSISTENCE_BACKEND", "sqlite").strip().lower()
KV_ACCOUNT_ID: str = os.getenv("CF_ACCOUNT_ID", "")
KV_NAMESPACE_ID: str = os.getenv("CF_NAMESPACE_ID", "")
KV_API_TOKEN: str = os.getenv("CF_API_TOKEN", "")
KV_API_BASE: str = os.getenv("CF_API_BASE", "https://api.cloudflare.com/client/v4")
KV_TIMEOUT_SECONDS: int = _parse_timeout_seconds("RANKINGS_KV_TIMEOUT_SECONDS", 30)
OPERATION_LOG_MAX_ENTRIES: int = _parse_int("RANKINGS_OPERATION_LOG_MAX_ENTRIES", 50)

COMMON_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}
