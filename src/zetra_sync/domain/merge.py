from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

from zetra_sync.domain.conflict_detector import changed_fields, client_changed_fields
from zetra_sync.domain.field_merge import merge_field
from zetra_sync.domain.operations import EntitySnapshot, SyncOperation

OverlapPolicy = Literal["manual", "last_writer_wins", "first_writer_wins", "intelligent_merge"]
MergeStrategy = Literal["disjoint", "last_writer_wins", "first_writer_wins", "intelligent_merge"]


@dataclass(frozen=True)
class MergeResult:
    data: dict[str, object]
    strategy: MergeStrategy
    client_fields: frozenset[str] = field(default_factory=frozenset)
    server_fields: frozenset[str] = field(default_factory=frozenset)
    overlapping: frozenset[str] = field(default_factory=frozenset)
    # Overlapping fields where one side's value did not survive the merge.
    discarded_client_fields: frozenset[str] = field(default_factory=frozenset)
    discarded_server_fields: frozenset[str] = field(default_factory=frozenset)

    @property
    def discarded(self) -> bool:
        return bool(self.discarded_client_fields or self.discarded_server_fields)


def try_auto_merge(
    operation: SyncOperation,
    base: Mapping[str, object] | None,
    current: EntitySnapshot,
    *,
    overlap_policy: OverlapPolicy = "manual",
) -> MergeResult | None:
    """Field-level merge of a stale, non-delete operation onto a live entity.

    `base` is the entity data at the operation's declared version. Without it
    every field the client sends counts as overlapping.

    Returns None when the conflict must be left for manual resolution.
    """
    if operation.kind == "DELETE" or current.deleted:
        return None

    if base is None:
        client = set(operation.payload)
        server = set(current.data)
        overlap = set(client)
    else:
        client = client_changed_fields(operation, base)
        server = changed_fields(base, current.data)
        overlap = client & server

    if not overlap:
        merged = dict(current.data)
        for key in client:
            merged[key] = operation.payload[key]
        return MergeResult(
            data=merged,
            strategy="disjoint",
            client_fields=frozenset(client),
            server_fields=frozenset(server),
        )

    if overlap_policy == "manual":
        return None

    client_is_later = operation.client_timestamp_ms >= current.last_modified_at_ms
    merged = dict(current.data)
    for key in client - overlap:
        merged[key] = operation.payload[key]

    if overlap_policy == "intelligent_merge":
        for key in overlap:
            merged[key] = merge_field(
                operation.entity_type,
                key,
                operation.payload[key],
                current.data.get(key),
                client_is_later=client_is_later,
            )
    else:
        # Ties go to the incoming operation under both timestamp policies.
        if overlap_policy == "first_writer_wins":
            client_wins = operation.client_timestamp_ms <= current.last_modified_at_ms
        else:
            client_wins = client_is_later
        if client_wins:
            for key in overlap:
                merged[key] = operation.payload[key]

    return MergeResult(
        data=merged,
        strategy=overlap_policy,
        client_fields=frozenset(client),
        server_fields=frozenset(server),
        overlapping=frozenset(overlap),
        discarded_client_fields=frozenset(
            k
            for k in overlap
            if merged.get(k) != operation.payload[k] and merged.get(k) == current.data.get(k)
        ),
        discarded_server_fields=frozenset(
            k
            for k in overlap
            if k in current.data
            and merged.get(k) != current.data[k]
            and merged.get(k) == operation.payload[k]
        ),
    )
