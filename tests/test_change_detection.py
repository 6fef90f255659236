from datetime import datetime, timezone

import pytest

from app.rankings.change_detection import ChangeDetector, ResetWindow
from app.rankings.models import Record, Snapshot

MIDDAY = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _snapshot(names: list[str]) -> Snapshot:
    records = tuple(
        Record(rank=i, character_name=name, power_score=1000 - i) for i, name in enumerate(names, start=1)
    )
    return Snapshot(scope_id="global", records=records, captured_at=1.0)


def _page(names: list[str], *, shift: int = 0) -> list[dict]:
    return [{"rank": i + shift, "character_name": name} for i, name in enumerate(names, start=1)]


def _detector(now: datetime = MIDDAY, **kwargs) -> ChangeDetector:
    params = dict(threshold_percent=80, rank_tolerance=3, compare_limit=100, reset_window=ResetWindow(4, 15))
    params.update(kwargs)
    return ChangeDetector(now=lambda: now, **params)


def test_identical_first_page_is_stable() -> None:
    names = [f"P{i}" for i in range(1, 21)]
    decision = _detector().decide(_page(names), _snapshot(names))

    assert decision.should_continue is False
    assert decision.reason == "stable"
    assert decision.position_similarity == pytest.approx(100.0)
    assert decision.name_similarity == pytest.approx(100.0)


def test_entirely_new_names_trigger_crawl() -> None:
    decision = _detector().decide(_page([f"N{i}" for i in range(20)]), _snapshot([f"P{i}" for i in range(20)]))

    assert decision.should_continue is True
    assert decision.reason == "changed"
    assert decision.position_similarity == 0.0


def test_small_rank_moves_stay_within_tolerance() -> None:
    names = [f"P{i}" for i in range(1, 11)]
    decision = _detector().decide(_page(names, shift=3), _snapshot(names))
    assert decision.should_continue is False

    decision = _detector().decide(_page(names, shift=4), _snapshot(names))
    assert decision.should_continue is True
    assert decision.name_similarity == pytest.approx(100.0)


def test_threshold_is_inclusive() -> None:
    names = [f"P{i}" for i in range(1, 11)]
    page = _page(names[:8] + ["X", "Y"])
    decision = _detector().decide(page, _snapshot(names))

    assert decision.position_similarity == pytest.approx(80.0)
    assert decision.should_continue is False


def test_missing_snapshot_forces_crawl() -> None:
    decision = _detector().decide(_page(["A"]), None)
    assert decision.should_continue is True
    assert decision.reason == "no_existing_snapshot"


@pytest.mark.parametrize(
    "moment, expected",
    [
        (datetime(2024, 5, 1, 4, 0, tzinfo=timezone.utc), True),
        (datetime(2024, 5, 1, 4, 14, 59, tzinfo=timezone.utc), True),
        (datetime(2024, 5, 1, 4, 15, tzinfo=timezone.utc), False),
        (datetime(2024, 5, 1, 3, 59, tzinfo=timezone.utc), False),
    ],
)
def test_reset_window_forces_crawl(moment: datetime, expected: bool) -> None:
    names = [f"P{i}" for i in range(1, 11)]
    decision = _detector(now=moment).decide(_page(names), _snapshot(names))

    assert decision.should_continue is expected
    assert (decision.reason == "reset_window") is expected


def test_compare_limit_caps_rows_considered() -> None:
    names = [f"P{i}" for i in range(1, 51)]
    page = _page(names[:5] + [f"X{i}" for i in range(45)])
    decision = _detector(compare_limit=5).decide(page, _snapshot(names))

    assert decision.compared == 5
    assert decision.should_continue is False
