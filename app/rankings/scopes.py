"""Region/server registry for leaderboard scopes.

Region and server names are persisted in storage keys
(``server_<region>_<server>``) and in quarantine payloads, so treat them as
stable identifiers. The numeric ids are what the source expects in its query
string. ``config.SCOPES_FILE`` may replace the built-in registry.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional
from urllib.parse import urlencode

from . import config
from .error_codes import UnknownScopeError
from .models import GLOBAL, GLOBAL_SCOPE, Scope
from .utils import LOGGER, load_json_file


def _servers(prefix: str, base_id: int, numbers: List[int]) -> Dict[str, int]:
    return {f"{prefix}{n:03d}": base_id + n for n in numbers}


DEFAULT_REGIONS: Dict[str, dict] = {
    "ASIA": {"id": 1, "servers": _servers("ASIA", 100, [11, 12, 13, 14, 21, 22, 23, 24, 31, 32, 33, 34])},
    "INMENA": {"id": 2, "servers": _servers("INMENA", 200, [11, 12, 13, 14, 21, 22])},
    "EU": {"id": 3, "servers": _servers("EU", 300, [11, 12, 13, 14, 21, 22, 23])},
    "SA": {"id": 4, "servers": _servers("SA", 400, [11, 12, 13, 14, 21, 22])},
    "NA": {"id": 5, "servers": _servers("NA", 500, [11, 12, 13, 14, 21, 22])},
}

_SCOPE_SEPARATORS = re.compile(r"[/_\-\s:]+")


def load_regions() -> Dict[str, dict]:
    """Return the registry, preferring a valid ``SCOPES_FILE`` override."""

    data = load_json_file(config.SCOPES_FILE)
    if isinstance(data, dict) and data:
        regions: Dict[str, dict] = {}
        for name, region in data.items():
            if not isinstance(region, dict) or "id" not in region:
                continue
            servers = region.get("servers") or {}
            regions[str(name).upper()] = {
                "id": int(region["id"]),
                "servers": {str(s).upper(): int(sid) for s, sid in servers.items()},
            }
        if regions:
            return regions
        LOGGER.warning("[SCOPES][WARN] %s has no usable regions; using defaults.", config.SCOPES_FILE)
    return DEFAULT_REGIONS


class ScopeRegistry:
    def __init__(self, regions: Optional[Dict[str, dict]] = None) -> None:
        self.regions = regions if regions is not None else load_regions()

    def all_scopes(self, *, include_global: bool = True) -> List[Scope]:
        scopes = [GLOBAL] if include_global else []
        for region_name, region in self.regions.items():
            for server_name in region["servers"]:
                scopes.append(Scope(region_name, server_name))
        return scopes

    def server_scopes(self) -> List[Scope]:
        return self.all_scopes(include_global=False)

    def resolve(self, region: str | None, server: str | None = None) -> Scope:
        """Return a validated scope for the given names (case-insensitive)."""

        if not region:
            return GLOBAL
        region_name = region.strip().upper()
        region_info = self.regions.get(region_name)
        if region_info is None:
            raise UnknownScopeError(f"Unknown region: {region}")
        if not server:
            raise UnknownScopeError(f"A server is required for region {region_name}")
        server_name = server.strip().upper()
        if server_name not in region_info["servers"]:
            raise UnknownScopeError(f"Unknown server {server} in region {region_name}")
        return Scope(region_name, server_name)

    def parse(self, value: str | None) -> Scope:
        """Parse ``"EU/EU011"``, ``"eu-eu011"`` or ``"global"`` into a scope."""

        if not value or value.strip().lower() in {GLOBAL_SCOPE, "main", "all"}:
            return GLOBAL
        parts = [p for p in _SCOPE_SEPARATORS.split(value.strip()) if p]
        if len(parts) != 2:
            raise UnknownScopeError(f"Cannot parse scope {value!r}")
        return self.resolve(parts[0], parts[1])

    def url_for(self, scope: Scope) -> str:
        if scope.is_global:
            return config.RANKING_URL
        region = self.regions[scope.region]
        query = urlencode(
            {
                "worldgroupid": region["id"],
                "worldid": region["servers"][scope.server],
                "classtype": "",
                "searchname": "",
            }
        )
        separator = "&" if "?" in config.RANKING_URL else "?"
        return f"{config.RANKING_URL}{separator}{query}"

    def server_count(self) -> int:
        return sum(len(region["servers"]) for region in self.regions.values())


__all__ = ["ScopeRegistry", "DEFAULT_REGIONS", "load_regions"]
