"""Token-bucket admission control keyed by caller identity and route."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from . import config
from .logging_utils import _ranking_event
from .telemetry import Telemetry

UNKNOWN_IDENTITY = "unknown"


@dataclass
class TokenBucket:
    capacity: float
    refill_per_second: float
    tokens: float
    last_refill: float
    last_seen: float

    @classmethod
    def full(cls, capacity: float, refill_per_second: float, now: float) -> "TokenBucket":
        return cls(capacity, refill_per_second, capacity, now, now)

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
        self.last_refill = now

    def shortfall_seconds(self, cost: float) -> float:
        if self.tokens >= cost:
            return 0.0
        if self.refill_per_second <= 0:
            return float("inf")
        return (cost - self.tokens) / self.refill_per_second


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after: float = 0.0
    remaining: Optional[float] = None
    limit: Optional[float] = None


def request_cost(*, full_snapshot: bool = False, bypass_cache: bool = False) -> float:
    """Base cost 1, doubled for full-snapshot reads and again for cache bypass."""

    cost = 1.0
    if full_snapshot:
        cost *= 2
    if bypass_cache:
        cost *= 2
    return cost


class RateLimiter:
    def __init__(
        self,
        *,
        identity_capacity: float | None = None,
        identity_refill_per_second: float | None = None,
        route_capacity: float | None = None,
        route_refill_per_second: float | None = None,
        route_overrides: Dict[str, Tuple[float, float]] | None = None,
        trusted_identities: Iterable[str] | None = None,
        telemetry: Telemetry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.identity_capacity = (
            config.IDENTITY_BUCKET_CAPACITY if identity_capacity is None else identity_capacity
        )
        self.identity_refill = (
            config.IDENTITY_REFILL_PER_SECOND
            if identity_refill_per_second is None
            else identity_refill_per_second
        )
        self.route_capacity = config.ROUTE_BUCKET_CAPACITY if route_capacity is None else route_capacity
        self.route_refill = (
            config.ROUTE_REFILL_PER_SECOND if route_refill_per_second is None else route_refill_per_second
        )
        self.route_overrides = dict(
            config.ROUTE_BUCKET_OVERRIDES if route_overrides is None else route_overrides
        )
        self.trusted_identities = frozenset(
            config.TRUSTED_IDENTITIES if trusted_identities is None else trusted_identities
        )
        self.telemetry = telemetry or Telemetry()
        self._clock = clock
        # One lock covers both maps so a two-bucket check-and-debit is atomic.
        self._lock = threading.Lock()
        self._identity_buckets: Dict[str, TokenBucket] = {}
        self._route_buckets: Dict[str, TokenBucket] = {}

    def _bucket(self, buckets: Dict[str, TokenBucket], key: str, capacity: float, refill: float, now: float) -> TokenBucket:
        bucket = buckets.get(key)
        if bucket is None:
            bucket = TokenBucket.full(capacity, refill, now)
            buckets[key] = bucket
        else:
            bucket.refill(now)
        bucket.last_seen = now
        return bucket

    def is_trusted(self, identity_key: str | None) -> bool:
        return bool(identity_key) and identity_key in self.trusted_identities

    def admit(self, identity_key: str | None, route_key: str, cost: float = 1.0) -> Admission:
        if self.is_trusted(identity_key):
            return Admission(allowed=True)
        # Callers without an address share one bucket.
        identity_key = identity_key or UNKNOWN_IDENTITY

        now = self._clock()
        route_capacity, route_refill = self.route_overrides.get(
            route_key, (self.route_capacity, self.route_refill)
        )
        with self._lock:
            identity = self._bucket(
                self._identity_buckets, identity_key, self.identity_capacity, self.identity_refill, now
            )
            route = self._bucket(self._route_buckets, route_key, route_capacity, route_refill, now)

            wait = max(identity.shortfall_seconds(cost), route.shortfall_seconds(cost))
            if wait > 0:
                remaining = min(identity.tokens, route.tokens)
                denied = Admission(
                    allowed=False,
                    retry_after=wait,
                    remaining=remaining,
                    limit=min(identity.capacity, route.capacity),
                )
            else:
                identity.tokens -= cost
                route.tokens -= cost
                return Admission(
                    allowed=True,
                    remaining=min(identity.tokens, route.tokens),
                    limit=min(identity.capacity, route.capacity),
                )

        self.telemetry.increment("rate_limit_exceeded")
        _ranking_event(
            "state",
            phase="rate_limit",
            kind="denied",
            identity=identity_key,
            route=route_key,
            cost=cost,
            retry_after=round(denied.retry_after, 3),
        )
        return denied

    def purge_idle(self, max_age_seconds: float | None = None) -> int:
        """Drop buckets with no activity for longer than ``max_age_seconds``."""

        max_age = config.BUCKET_IDLE_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        now = self._clock()
        removed = 0
        with self._lock:
            for buckets in (self._identity_buckets, self._route_buckets):
                stale = [key for key, bucket in buckets.items() if now - bucket.last_seen > max_age]
                for key in stale:
                    del buckets[key]
                removed += len(stale)
        if removed:
            _ranking_event("state", phase="rate_limit", kind="purged", removed=removed)
        return removed

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._identity_buckets) + len(self._route_buckets)

    def peek(self, identity_key: str) -> Optional[TokenBucket]:
        with self._lock:
            bucket = self._identity_buckets.get(identity_key)
            if bucket is None:
                return None
            return TokenBucket(**vars(bucket))


__all__ = ["RateLimiter", "TokenBucket", "Admission", "request_cost", "UNKNOWN_IDENTITY"]
