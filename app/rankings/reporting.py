"""Snapshot statistics and Excel export."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from . import config
from .models import Snapshot

MAX_EXPORTS = int(os.environ.get("EXPORTS_KEEP_MAX", "5"))

_COLUMNS = [
    "rank",
    "character_name",
    "class_tag",
    "clan_name",
    "power_score",
    "server_name",
    "region_name",
    "scope_id",
    "has_validation_errors",
]


def snapshot_frame(snapshot: Snapshot) -> pd.DataFrame:
    rows = [record.to_dict() for record in snapshot.records]
    if not rows:
        return pd.DataFrame(columns=_COLUMNS)
    return pd.DataFrame(rows)[_COLUMNS]


def _grouped(df: pd.DataFrame, column: str) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=[column, "members", "total_power", "avg_power"])
    return (
        df.groupby(column)["power_score"]
        .agg(members="size", total_power="sum", avg_power="mean")
        .reset_index()
        .sort_values(["members", "total_power"], ascending=False)
    )


def summarize_snapshot(snapshot: Snapshot, *, top_clans: int = 10) -> Dict[str, Any]:
    """Return JSON-friendly statistics for one snapshot."""

    df = snapshot_frame(snapshot)
    if df.empty:
        return {
            "scope_id": snapshot.scope_id,
            "captured_at": snapshot.captured_at,
            "total_records": 0,
            "power": None,
            "by_class": {},
            "top_clans": [],
        }

    power = df["power_score"]
    by_class = _grouped(df, "class_tag")
    clans = _grouped(df[df["clan_name"] != ""], "clan_name").head(top_clans)

    return {
        "scope_id": snapshot.scope_id,
        "captured_at": snapshot.captured_at,
        "partial": snapshot.partial,
        "total_records": int(len(df)),
        "flagged_records": int(df["has_validation_errors"].sum()),
        "power": {
            "max": int(power.max()),
            "min": int(power.min()),
            "mean": round(float(power.mean()), 2),
            "median": round(float(power.median()), 2),
        },
        "by_class": {
            str(row.class_tag): {
                "count": int(row.members),
                "avg_power": round(float(row.avg_power), 2),
            }
            for row in by_class.itertuples(index=False)
        },
        "top_clans": [
            {
                "clan_name": str(row.clan_name),
                "members": int(row.members),
                "total_power": int(row.total_power),
            }
            for row in clans.itertuples(index=False)
        ],
    }


def prune_old_exports() -> None:
    exports = sorted(config.EXPORTS_DIR.glob("*.xlsx"))
    while len(exports) > MAX_EXPORTS:
        old = exports.pop(0)
        try:
            old.unlink()
        except OSError:
            continue


def export_snapshot_to_excel(snapshot: Snapshot, dest_path: Optional[Path] = None) -> Path:
    """Write the snapshot plus class and clan summaries to an xlsx workbook."""

    df = snapshot_frame(snapshot)
    if df.empty:
        df = pd.DataFrame([{"info": "Snapshot has no records"}])
        by_class = pd.DataFrame()
        by_clan = pd.DataFrame()
    else:
        by_class = _grouped(df, "class_tag")
        by_clan = _grouped(df[df["clan_name"] != ""], "clan_name")

    config.EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
    if dest_path is None:
        safe_scope = snapshot.scope_id.replace("/", "_")
        dest_path = config.EXPORTS_DIR / f"rankings_{safe_scope}_{time.strftime('%Y%m%d_%H%M%S')}.xlsx"

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="Rankings")
        if not by_class.empty:
            by_class.to_excel(writer, index=False, sheet_name="By_Class")
        if not by_clan.empty:
            by_clan.to_excel(writer, index=False, sheet_name="By_Clan")

    prune_old_exports()
    return Path(dest_path)


__all__ = ["snapshot_frame", "summarize_snapshot", "export_snapshot_to_excel", "prune_old_exports"]
