from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Optional

GLOBAL_SCOPE = "global"


class ClassTag(str, Enum):
    WARRIOR = "warrior"
    SORCERER = "sorcerer"
    TAOIST = "taoist"
    ARBALIST = "arbalist"
    LANCER = "lancer"
    DARKIST = "darkist"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any) -> "ClassTag":
        if isinstance(value, ClassTag):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Scope:
    """A leaderboard scope: the global board or one region/server pair."""

    region: Optional[str] = None
    server: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.region is None

    @property
    def scope_id(self) -> str:
        if self.is_global:
            return GLOBAL_SCOPE
        return f"{self.region}/{self.server}"

    @property
    def persistence_key(self) -> str:
        if self.is_global:
            return "main_rankings"
        return f"server_{self.region}_{self.server}"

    def __str__(self) -> str:
        return self.scope_id


GLOBAL = Scope()


@dataclass(frozen=True)
class Record:
    rank: int
    character_name: str
    power_score: int
    scope_id: str = GLOBAL_SCOPE
    captured_at: float = 0.0
    clan_name: str = ""
    class_tag: ClassTag = ClassTag.UNKNOWN
    server_name: str = ""
    region_name: str = ""
    has_validation_errors: bool = False
    invalid_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["class_tag"] = self.class_tag.value
        data["invalid_fields"] = list(self.invalid_fields)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        return cls(
            rank=int(data["rank"]),
            character_name=str(data["character_name"]),
            power_score=int(data.get("power_score") or 0),
            scope_id=str(data.get("scope_id") or GLOBAL_SCOPE),
            captured_at=float(data.get("captured_at") or 0.0),
            clan_name=str(data.get("clan_name") or ""),
            class_tag=ClassTag.coerce(data.get("class_tag")),
            server_name=str(data.get("server_name") or ""),
            region_name=str(data.get("region_name") or ""),
            has_validation_errors=bool(data.get("has_validation_errors", False)),
            invalid_fields=tuple(data.get("invalid_fields") or ()),
        )


@dataclass(frozen=True)
class Snapshot:
    """Ordered records for one scope; replaces the previous snapshot wholesale."""

    scope_id: str
    records: tuple[Record, ...]
    captured_at: float
    page_count: int = 1
    partial: bool = False
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        previous = 0
        for record in self.records:
            if record.rank <= previous:
                raise ValueError(
                    f"Snapshot ranks must be strictly increasing (scope={self.scope_id}, rank={record.rank})"
                )
            previous = record.rank

    def __len__(self) -> int:
        return len(self.records)

    def stamped(self, scope: Scope) -> "Snapshot":
        """Return a copy whose records carry the scope's identifiers."""

        records = tuple(
            replace(
                record,
                scope_id=scope.scope_id,
                region_name=scope.region or record.region_name,
                server_name=scope.server or record.server_name,
            )
            for record in self.records
        )
        return replace(self, scope_id=scope.scope_id, records=records)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "captured_at": self.captured_at,
            "page_count": self.page_count,
            "partial": self.partial,
            "metadata": dict(self.metadata),
            "records": [record.to_dict() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        return cls(
            scope_id=str(data.get("scope_id") or GLOBAL_SCOPE),
            records=tuple(Record.from_dict(item) for item in data.get("records") or []),
            captured_at=float(data.get("captured_at") or 0.0),
            page_count=int(data.get("page_count") or 1),
            partial=bool(data.get("partial", False)),
            metadata=dict(data.get("metadata") or {}),
        )


def sorted_by_power(records: Iterable[Record]) -> list[Record]:
    return sorted(records, key=lambda record: record.power_score, reverse=True)


__all__ = [
    "GLOBAL_SCOPE",
    "GLOBAL",
    "ClassTag",
    "Scope",
    "Record",
    "Snapshot",
    "sorted_by_power",
]
