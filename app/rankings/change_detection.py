from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from . import config
from .logging_utils import _ranking_event
from .models import Snapshot


@dataclass(frozen=True)
class ResetWindow:
    """Daily UTC window during which the source rebuilds its leaderboard."""

    hour: int
    minutes: int

    @classmethod
    def from_config(cls) -> "ResetWindow":
        return cls(config.RESET_HOUR_UTC, config.RESET_WINDOW_MINUTES)

    def contains(self, moment: datetime) -> bool:
        moment = moment.astimezone(timezone.utc)
        return moment.hour == self.hour and moment.minute < self.minutes


@dataclass(frozen=True)
class ChangeDecision:
    should_continue: bool
    reason: str
    compared: int = 0
    position_matches: int = 0
    name_matches: int = 0
    position_similarity: float = 0.0
    name_similarity: float = 0.0


class ChangeDetector:
    """Decide from a first page whether a full paginated crawl is needed."""

    def __init__(
        self,
        *,
        threshold_percent: float | None = None,
        rank_tolerance: int | None = None,
        compare_limit: int | None = None,
        reset_window: ResetWindow | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.threshold_percent = (
            config.SIMILARITY_THRESHOLD_PERCENT if threshold_percent is None else threshold_percent
        )
        self.rank_tolerance = config.RANK_TOLERANCE if rank_tolerance is None else rank_tolerance
        self.compare_limit = config.COMPARE_LIMIT if compare_limit is None else compare_limit
        self.reset_window = reset_window or ResetWindow.from_config()
        self._now = now

    def decide(
        self,
        first_page: Sequence[Mapping[str, Any]],
        existing: Optional[Snapshot],
        *,
        scope_id: str = "",
    ) -> ChangeDecision:
        if existing is None or not existing.records:
            decision = ChangeDecision(True, "no_existing_snapshot")
        elif self.reset_window.contains(self._now()):
            decision = ChangeDecision(True, "reset_window")
        else:
            decision = self._compare(first_page, existing)

        _ranking_event(
            "state",
            phase="change_detection",
            scope=scope_id,
            should_continue=decision.should_continue,
            reason=decision.reason,
            compared=decision.compared,
            position_similarity=round(decision.position_similarity, 2),
            name_similarity=round(decision.name_similarity, 2),
        )
        return decision

    def _compare(self, first_page: Sequence[Mapping[str, Any]], existing: Snapshot) -> ChangeDecision:
        by_name = {record.character_name: record for record in existing.records}
        compared = min(len(first_page), len(existing.records), self.compare_limit)
        if compared == 0:
            return ChangeDecision(True, "nothing_to_compare")

        position_matches = 0
        name_matches = 0
        for row in first_page[:compared]:
            match = by_name.get(str(row.get("character_name") or ""))
            if match is None:
                continue
            name_matches += 1
            try:
                if abs(int(row.get("rank")) - match.rank) <= self.rank_tolerance:
                    position_matches += 1
            except (TypeError, ValueError):
                continue

        position_similarity = position_matches / compared * 100
        name_similarity = name_matches / compared * 100
        stable = position_similarity >= self.threshold_percent
        return ChangeDecision(
            should_continue=not stable,
            reason="stable" if stable else "changed",
            compared=compared,
            position_matches=position_matches,
            name_matches=name_matches,
            position_similarity=position_similarity,
            name_similarity=name_similarity,
        )


__all__ = ["ChangeDetector", "ChangeDecision", "ResetWindow"]
