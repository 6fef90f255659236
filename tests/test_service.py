from __future__ import annotations

from contextlib import nullcontext
from pathlib import Path
from typing import Any

import pytest

from app.rankings import config, prefetch
from app.rankings.browser_session import SessionPool
from app.rankings.cache import CacheManager, Tier
from app.rankings.change_detection import ChangeDetector
from app.rankings.crawler import CrawlController
from app.rankings.error_codes import SourcePolicyError
from app.rankings.models import ClassTag, Scope
from app.rankings.quarantine import ErrorAction, ErrorKind, QuarantineQueue
from app.rankings.rate_limiter import RateLimiter
from app.rankings.retry_policy import RetryEngine, RetryPolicy
from app.rankings.scopes import ScopeRegistry
from app.rankings.service import RankingService
from app.rankings.telemetry import Telemetry
from tests.test_crawler import MIDDAY, FakeSession, FakeStore, _configure_temp_paths, _row

REGIONS = {
    "EU": {"id": 3, "servers": {"EU011": 311, "EU012": 312}},
    "NA": {"id": 5, "servers": {"NA011": 511}},
}

BOARDS: dict[str, list[dict[str, Any]]] = {
    "global": [
        _row(1, "Aria", 9_000_000, server="EU011", clan="Lions", icon=3),
        _row(2, "Bran", 8_000_000, server="NA011", clan="Wolves", icon=1),
        _row(3, "Cato", 7_000_000, server="EU011", clan="lions", icon=3),
        _row(4, "Dara", 6_000_000, server="EU012", clan="", icon=2),
    ],
    "311": [
        _row(1, "Aria", 9_000_000, server="EU011", clan="Lions"),
        _row(2, "Cato", 7_000_000, server="EU011", clan="Lions"),
    ],
    "312": [
        _row(1, "Dara", 6_000_000, server="EU012", clan="Ravens"),
        _row(2, "Arian", 6_500_000, server="EU012", clan="Lions"),
    ],
    "511": [_row(1, "Bran", 8_000_000, server="NA011", clan="Wolves")],
}


class RoutedSession(FakeSession):
    """Serves the board matching the ``worldid`` in the opened URL."""

    failing: set[str] = set()

    def __init__(self) -> None:
        super().__init__([])

    def open(self, url: str) -> None:
        self.opened.append(url)
        key = url.split("worldid=")[1].split("&")[0] if "worldid=" in url else "global"
        if key in self.failing:
            raise SourcePolicyError(f"HTTP 403 for {url}", http_status=403)
        self.rows = BOARDS[key]
        self.visible = min(self.page_size, len(self.rows))


def _service(tmp_path: Path, *, store: FakeStore | None = None, failing: set[str] | None = None) -> RankingService:
    telemetry = Telemetry()
    RoutedSession.failing = failing or set()
    cache = CacheManager()
    registry = ScopeRegistry(REGIONS)
    retry = RetryEngine(
        policy=RetryPolicy(max_retries=1, initial_delay=0.0, jitter_ratio=0.0),
        telemetry=telemetry,
        sleep=lambda _s: None,
    )
    quarantine = QuarantineQueue(tmp_path / "q", telemetry=telemetry)
    controller = CrawlController(
        cache=cache,
        sessions=SessionPool(factory=lambda: nullcontext(RoutedSession()), max_sessions=2),
        registry=registry,
        store=store,
        detector=ChangeDetector(now=lambda: MIDDAY),
        retry=retry,
        quarantine=quarantine,
        telemetry=telemetry,
    )
    return RankingService(
        cache=cache,
        limiter=RateLimiter(telemetry=telemetry),
        registry=registry,
        store=store,
        quarantine=quarantine,
        telemetry=telemetry,
        retry=retry,
        controller=controller,
    )


@pytest.fixture(autouse=True)
def _temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)


def test_range_query_is_memoised_per_snapshot(tmp_path: Path) -> None:
    service = _service(tmp_path)

    records = service.query_range(Scope(), 2, 3)
    again = service.query_range(Scope(), 2, 3)

    assert [r.character_name for r in records] == ["Bran", "Cato"]
    assert again is records
    assert service.cache.stats()["query"]["hits"] == 1


def test_range_query_rejects_bad_bounds(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _service(tmp_path).query_range(Scope(), 5, 2)


def test_clan_class_and_server_filters(tmp_path: Path) -> None:
    service = _service(tmp_path)

    assert [r.character_name for r in service.query_clan(Scope(), "LIONS")] == ["Aria", "Cato"]
    assert [r.character_name for r in service.query_class(Scope(), "taoist")] == ["Aria", "Cato"]
    assert [r.character_name for r in service.query_class(Scope(), ClassTag.SORCERER)] == ["Dara"]
    assert [r.character_name for r in service.query_server_name("eu012")] == ["Dara"]


def test_stats_summarises_snapshot(tmp_path: Path) -> None:
    stats = _service(tmp_path).stats(Scope())

    assert stats["total_records"] == 4
    assert stats["power"]["max"] == 9_000_000
    assert stats["by_class"]["taoist"]["count"] == 2
    assert stats["top_clans"][0]["clan_name"] in {"Lions", "lions", "Wolves"}


def test_character_search_fans_out_and_sorts_by_power(tmp_path: Path) -> None:
    service = _service(tmp_path)

    results = service.search_character("ari")

    assert [r.character_name for r in results] == ["Aria", "Arian"]
    assert {r.scope_id for r in results} == {"EU/EU011", "EU/EU012"}
    assert service.search_character("   ") == []


def test_clan_search_is_exact_and_case_insensitive(tmp_path: Path) -> None:
    results = _service(tmp_path).search_clan("lions")

    assert [r.character_name for r in results] == ["Aria", "Cato", "Arian"]


def test_search_skips_failing_scopes(tmp_path: Path) -> None:
    service = _service(tmp_path, failing={"312"})

    results = service.search_character("a")

    assert "Arian" not in [r.character_name for r in results]
    assert "Bran" in [r.character_name for r in results]


def test_refresh_all_records_status_and_failures(tmp_path: Path) -> None:
    service = _service(tmp_path, store=FakeStore(), failing={"511"})

    status = service.refresh_all(force_update=True)

    assert status["started"] is True
    assert status["is_running"] is False
    assert status["total_servers"] == 4
    assert status["completed_servers"] == 4
    assert [e["scope"] for e in status["errors"]] == ["NA/NA011"]
    assert Path(status["run_file"]).exists()
    assert prefetch.load_status()["completed_servers"] == 4
    assert service.recent_operations()[0]["type"] == "scope_update"


def test_cleanup_reports_each_purge(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = _service(tmp_path)
    config.SCRAPED_PAGES_DIR.mkdir(parents=True, exist_ok=True)
    stale = config.SCRAPED_PAGES_DIR / "global_1_p1.html"
    stale.write_text("<html></html>", encoding="utf-8")
    monkeypatch.setattr(config, "RAW_PAGE_MAX_AGE_SECONDS", -1)

    summary = service.cleanup()

    assert summary["removed_pages"] == 1
    assert not stale.exists()
    assert summary["purged_buckets"] == 0
    assert summary["pruned_quarantine"] == 0


def test_reprocess_quarantine_uses_default_repair(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.quarantine.enqueue(
        ErrorKind.MISSING_FIELD,
        {"field": "power_score", "value": None, "constraints": {}},
        action=ErrorAction.AUTO_FIX,
    )

    summary = service.reprocess_quarantine()

    assert summary["fixed"] == 1
    assert summary["remaining"] == 0


def test_clear_cache_forces_next_read_to_crawl(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.get_rankings(Scope())
    assert service.cache.get(Tier.MAIN) is not None

    service.clear_cache()

    assert service.cache_stats()["main"]["size"] == 0
    assert service.get_rankings(Scope()).source == "crawl"
