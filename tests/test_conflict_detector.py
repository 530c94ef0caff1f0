from __future__ import annotations

import pytest

from zetra_sync.domain.conflict_detector import changed_fields, classify, client_changed_fields
from zetra_sync.domain.operations import EntitySnapshot


def _current(version: int | None, *, deleted: bool = False) -> EntitySnapshot | None:
    if version is None:
        return None
    return EntitySnapshot(
        entity_type="task",
        entity_id="e1",
        current_version=version,
        data={"title": "t"},
        deleted=deleted,
    )


@pytest.mark.parametrize(
    "kind, declared, current_version, deleted, expected",
    [
        # Unknown entity.
        ("CREATE", 0, None, False, "CLEAN"),
        ("UPDATE", 0, None, False, "CLEAN"),
        ("DELETE", 0, None, False, "CLEAN"),
        # No interleaving write.
        ("UPDATE", 3, 3, False, "CLEAN"),
        ("DELETE", 3, 3, False, "CLEAN"),
        ("CREATE", 3, 3, False, "CLEAN"),
        # Stale writes against a live entity.
        ("UPDATE", 2, 4, False, "CONCURRENT_CONFLICT"),
        ("CREATE", 0, 1, False, "CONCURRENT_CONFLICT"),
        ("DELETE", 2, 4, False, "DELETE_CONFLICT"),
        # Tombstoned entity.
        ("UPDATE", 3, 4, True, "DELETE_CONFLICT"),
        ("CREATE", 3, 4, True, "DELETE_CONFLICT"),
        # The client saw the delete; its write revives the entity.
        ("UPDATE", 4, 4, True, "CLEAN"),
        ("CREATE", 4, 4, True, "CLEAN"),
        ("DELETE", 3, 4, True, "CLEAN"),
        ("DELETE", 4, 4, True, "CLEAN"),
    ],
)
def test_classify_matrix(
    make_op,
    kind: str,
    declared: int,
    current_version: int | None,
    deleted: bool,
    expected: str,
) -> None:
    op = make_op("op-1", kind=kind, declared_version=declared, payload={"title": "x"})
    assert classify(op, _current(current_version, deleted=deleted)) == expected


def test_changed_fields_covers_added_removed_and_modified() -> None:
    base = {"a": 1, "b": 2, "c": 3}
    target = {"a": 1, "b": 20, "d": 4}
    assert changed_fields(base, target) == {"b", "c", "d"}
    assert changed_fields(base, dict(base)) == set()


def test_client_changed_fields_ignores_unchanged_values(make_op) -> None:
    op = make_op("op-1", payload={"a": 1, "b": 5, "z": None})
    assert client_changed_fields(op, {"a": 1, "b": 2}) == {"b", "z"}
