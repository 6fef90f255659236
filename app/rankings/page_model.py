"""HTML extraction for leaderboard pages."""
from __future__ import annotations

import re
from typing import Any, Protocol

from bs4 import BeautifulSoup

from . import config
from .models import ClassTag
from .utils import log_line

_BACKGROUND_URL = re.compile(r"url\(\s*['\"]?([^'\")]+)['\"]?\s*\)", re.I)
_CHAR_ICON = re.compile(r"char_(\d+)\.\w+$", re.I)
_DIGITS = re.compile(r"[^\d]")

# Avatar icon number -> class.
CLASS_BY_ICON: dict[str, ClassTag] = {
    "1": ClassTag.WARRIOR,
    "2": ClassTag.SORCERER,
    "3": ClassTag.TAOIST,
    "4": ClassTag.ARBALIST,
    "5": ClassTag.LANCER,
    "6": ClassTag.DARKIST,
}


class PageModel(Protocol):
    def parse(self, raw_html: str) -> list[dict[str, Any]]: ...


def extract_image_url(style: str | None) -> str | None:
    """Return the ``background-image`` URL from an inline style attribute."""

    if not style:
        return None
    match = _BACKGROUND_URL.search(style)
    return match.group(1).strip() if match else None


def class_from_image_url(url: str | None) -> ClassTag:
    if not url:
        return ClassTag.UNKNOWN
    match = _CHAR_ICON.search(url.split("?", 1)[0])
    if not match:
        return ClassTag.UNKNOWN
    return CLASS_BY_ICON.get(match.group(1), ClassTag.UNKNOWN)


def parse_power_score(text: str | None) -> int | None:
    digits = _DIGITS.sub("", text or "")
    return int(digits) if digits else None


class LeaderboardPageModel:
    """Parse ``tr.list_article`` rows into raw record dicts.

    Values are left as found (rank and power as ints when numeric) so that the
    validation pipeline decides what to do with odd rows.
    """

    def __init__(self, row_selector: str | None = None) -> None:
        self.row_selector = row_selector or config.ROW_SELECTOR

    @staticmethod
    def _text(row: Any, selector: str) -> str:
        node = row.select_one(selector)
        return node.get_text(strip=True) if node is not None else ""

    def parse_row(self, row: Any) -> dict[str, Any] | None:
        rank_text = self._text(row, ".rank_num .num")
        name = self._text(row, ".user_name")
        if not rank_text or not name:
            return None

        icon = row.select_one(".user_icon")
        image_url = extract_image_url(icon.get("style") if icon is not None else None)
        power = parse_power_score(self._text(row, "td.text_right span"))

        return {
            "rank": int(rank_text) if rank_text.isdigit() else rank_text,
            "character_name": name,
            "class_tag": class_from_image_url(image_url),
            "server_name": self._text(row, "td:nth-of-type(3) span"),
            "clan_name": self._text(row, "td:nth-of-type(4) span"),
            "power_score": power,
            "image_url": image_url,
        }

    def parse(self, raw_html: str) -> list[dict[str, Any]]:
        soup = BeautifulSoup(raw_html or "", "html5lib")
        rows: list[dict[str, Any]] = []
        for index, row in enumerate(soup.select(self.row_selector)):
            try:
                parsed = self.parse_row(row)
            except (AttributeError, ValueError) as exc:
                log_line(f"[PAGE] Skipping unparsable row {index}: {exc}")
                continue
            if parsed is not None:
                rows.append(parsed)
        return rows


__all__ = [
    "PageModel",
    "LeaderboardPageModel",
    "CLASS_BY_ICON",
    "extract_image_url",
    "class_from_image_url",
    "parse_power_score",
]
