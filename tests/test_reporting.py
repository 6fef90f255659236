from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from app.rankings import config, reporting
from app.rankings.models import ClassTag, Record, Snapshot
from tests.test_crawler import _configure_temp_paths


def _snapshot() -> Snapshot:
    records = (
        Record(1, "Aria", 900, clan_name="Lions", class_tag=ClassTag.TAOIST),
        Record(2, "Bran", 800, clan_name="Wolves", class_tag=ClassTag.WARRIOR),
        Record(3, "Cato", 700, clan_name="Lions", class_tag=ClassTag.TAOIST, has_validation_errors=True),
        Record(4, "Dara", 600, clan_name="", class_tag=ClassTag.UNKNOWN),
    )
    return Snapshot(scope_id="global", records=records, captured_at=10.0)


@pytest.fixture(autouse=True)
def _temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)


def test_summarize_snapshot_counts_classes_and_clans() -> None:
    summary = reporting.summarize_snapshot(_snapshot())

    assert summary["total_records"] == 4
    assert summary["flagged_records"] == 1
    assert summary["power"] == {"max": 900, "min": 600, "mean": 750.0, "median": 750.0}
    assert summary["by_class"]["taoist"] == {"count": 2, "avg_power": 800.0}
    assert summary["top_clans"][0] == {"clan_name": "Lions", "members": 2, "total_power": 1600}
    assert [c["clan_name"] for c in summary["top_clans"]] == ["Lions", "Wolves"]


def test_summarize_empty_snapshot() -> None:
    summary = reporting.summarize_snapshot(Snapshot("global", (), 1.0))
    assert summary["total_records"] == 0
    assert summary["power"] is None


def test_export_writes_all_sheets() -> None:
    path = reporting.export_snapshot_to_excel(_snapshot())

    assert path.parent == config.EXPORTS_DIR
    sheets = pd.read_excel(path, sheet_name=None, engine="openpyxl")
    assert set(sheets) == {"Rankings", "By_Class", "By_Clan"}
    assert list(sheets["Rankings"]["character_name"]) == ["Aria", "Bran", "Cato", "Dara"]


def test_old_exports_are_pruned(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(reporting, "MAX_EXPORTS", 2)
    config.EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
    for name in ("rankings_a.xlsx", "rankings_b.xlsx", "rankings_c.xlsx"):
        (config.EXPORTS_DIR / name).write_bytes(b"")

    reporting.prune_old_exports()

    assert sorted(p.name for p in config.EXPORTS_DIR.glob("*.xlsx")) == ["rankings_b.xlsx", "rankings_c.xlsx"]
