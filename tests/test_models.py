import pytest

from app.rankings.error_codes import (
    CrawlError,
    ErrorCode,
    SourcePolicyError,
    classify_http_status,
    error_for_http_status,
)
from app.rankings.models import GLOBAL, ClassTag, Record, Scope, Snapshot, sorted_by_power


def test_scope_identifiers() -> None:
    assert GLOBAL.scope_id == "global"
    assert GLOBAL.persistence_key == "main_rankings"
    scope = Scope("EU", "EU011")
    assert scope.scope_id == "EU/EU011"
    assert scope.persistence_key == "server_EU_EU011"
    assert not scope.is_global


def test_snapshot_rejects_non_increasing_ranks() -> None:
    records = (Record(1, "A", 10), Record(1, "B", 9))
    with pytest.raises(ValueError, match="strictly increasing"):
        Snapshot("global", records, 1.0)


def test_snapshot_dict_round_trip_keeps_flags() -> None:
    record = Record(3, "Cato", 700, class_tag=ClassTag.LANCER, has_validation_errors=True, invalid_fields=("clan_name",))
    snapshot = Snapshot("global", (record,), 5.0, page_count=2, partial=True, metadata={"source_url": "x"})

    restored = Snapshot.from_dict(snapshot.to_dict())

    assert restored == snapshot
    assert restored.records[0].class_tag is ClassTag.LANCER
    assert restored.records[0].invalid_fields == ("clan_name",)
    assert restored.metadata == {"source_url": "x"}


def test_stamped_sets_scope_fields() -> None:
    snapshot = Snapshot("global", (Record(1, "A", 10, server_name="EU011"),), 1.0)
    stamped = snapshot.stamped(Scope("EU", "EU011"))

    assert stamped.scope_id == "EU/EU011"
    assert stamped.records[0].region_name == "EU"
    assert stamped.records[0].scope_id == "EU/EU011"


def test_class_tag_coerce_falls_back_to_unknown() -> None:
    assert ClassTag.coerce(" Warrior ") is ClassTag.WARRIOR
    assert ClassTag.coerce("bard") is ClassTag.UNKNOWN
    assert ClassTag.coerce(None) is ClassTag.UNKNOWN


def test_sorted_by_power_descending() -> None:
    records = [Record(1, "A", 5), Record(2, "B", 50), Record(3, "C", 20)]
    assert [r.character_name for r in sorted_by_power(records)] == ["B", "C", "A"]


@pytest.mark.parametrize(
    "status, code",
    [
        (401, ErrorCode.HTTP_401),
        (403, ErrorCode.HTTP_403),
        (404, ErrorCode.HTTP_4XX),
        (429, ErrorCode.HTTP_429),
        (502, ErrorCode.HTTP_5XX),
        (None, ErrorCode.INTERNAL),
    ],
)
def test_classify_http_status(status, code) -> None:
    assert classify_http_status(status) == code


def test_error_for_http_status_maps_policy_and_transient() -> None:
    assert error_for_http_status(200, "u") is None
    assert isinstance(error_for_http_status(403, "u"), SourcePolicyError)

    transient = error_for_http_status(503, "u")
    assert isinstance(transient, CrawlError) and transient.retryable is True

    client = error_for_http_status(404, "u")
    assert isinstance(client, CrawlError) and client.retryable is False
    assert client.to_dict() == {"error": ErrorCode.HTTP_4XX, "message": "Source returned HTTP 404 for u", "http_status": 404}
