from __future__ import annotations

import pytest
from sqlmodel import select

from zetra_sync.config import settings
from zetra_sync.db import session_scope
from zetra_sync.domain.planner import ApplyPlan
from zetra_sync.errors import StaleVersionError, ValidationError
from zetra_sync.models import EntityVersion, SyncConflict, SyncOperationLog
from zetra_sync.repositories import entity_versions_repo
from zetra_sync.services import sync_service


async def _sync(user, device_id: str, operations, **kwargs):
    async with session_scope() as session:
        return await sync_service.synchronize(
            session=session, user=user, device_id=device_id, operations=operations, **kwargs
        )


async def _entity(org_id: str, entity_id: str = "e1") -> EntityVersion | None:
    async with session_scope() as session:
        return await entity_versions_repo.get(
            session, org_id=org_id, entity_type="task", entity_id=entity_id
        )


async def _seed_to_version_3(user, make_op) -> None:
    # v1: create, v2: notes y, v3: notes z
    result = await _sync(
        user,
        "dev-a",
        [
            make_op("seed-1", kind="CREATE", payload={"title": "a", "status": "open", "notes": "x"}),
            make_op("seed-2", declared_version=1, payload={"notes": "y"}),
            make_op("seed-3", declared_version=2, payload={"notes": "z"}),
        ],
    )
    assert [r["status"] for r in result["results"]] == ["applied", "applied", "applied"]
    assert [r["version"] for r in result["results"]] == [1, 2, 3]


@pytest.mark.anyio
async def test_clean_apply_bumps_version_by_exactly_one(user, make_op) -> None:
    await _seed_to_version_3(user, make_op)

    result = await _sync(user, "dev-a", [make_op("a-1", declared_version=3, payload={"title": "A2"})])

    assert result["operationsProcessed"] == 1
    assert result["results"][0]["status"] == "applied"
    assert result["results"][0]["version"] == 4
    assert result["errors"] == []
    assert result["conflicts"] == []

    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 4
    assert row.data_json == {"title": "A2", "status": "open", "notes": "z"}
    assert row.last_modified_device == "dev-a"


@pytest.mark.anyio
async def test_stale_update_on_disjoint_fields_auto_merges(user, make_op) -> None:
    await _seed_to_version_3(user, make_op)
    await _sync(user, "dev-a", [make_op("a-1", declared_version=3, payload={"title": "A2"})])

    # Device B went offline at version 2 and edits a different field.
    result = await _sync(
        user, "dev-b", [make_op("b-1", declared_version=2, payload={"status": "done"})]
    )

    outcome = result["results"][0]
    assert outcome["status"] == "merged"
    assert outcome["version"] == 5
    assert outcome["mergeStrategy"] == "disjoint"
    assert result["conflicts"] == []

    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 5
    assert row.data_json == {"title": "A2", "status": "done", "notes": "z"}


@pytest.mark.anyio
async def test_stale_update_on_overlapping_fields_surfaces_concurrent_conflict(
    user, make_op
) -> None:
    await _seed_to_version_3(user, make_op)
    await _sync(user, "dev-a", [make_op("a-1", declared_version=3, payload={"title": "A2"})])

    result = await _sync(user, "dev-b", [make_op("b-1", declared_version=2, payload={"title": "B"})])

    outcome = result["results"][0]
    assert outcome["status"] == "conflict"
    assert outcome["conflictId"]
    assert len(result["conflicts"]) == 1
    conflict = result["conflicts"][0]
    assert conflict["conflictType"] == "concurrent"
    assert conflict["remoteVersion"] == 4
    assert conflict["localOperation"]["payload"] == {"title": "B"}

    # Never silently overwritten.
    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 4
    assert row.data_json["title"] == "A2"


@pytest.mark.anyio
async def test_last_writer_wins_policy_resolves_overlap(user, make_op, monkeypatch) -> None:
    monkeypatch.setattr(settings, "sync_overlap_policy", "last_writer_wins")
    await _seed_to_version_3(user, make_op)
    await _sync(user, "dev-a", [make_op("a-1", declared_version=3, payload={"title": "A2"})])

    # Client edit predates the server write: server value survives, and it is reported.
    result = await _sync(
        user,
        "dev-b",
        [make_op("b-1", declared_version=2, payload={"title": "B"}, client_timestamp_ms=1)],
    )

    outcome = result["results"][0]
    assert outcome["status"] == "merged"
    assert outcome["mergeStrategy"] == "last_writer_wins"
    assert outcome["discardedClientFields"] == ["title"]
    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 5
    assert row.data_json["title"] == "A2"


@pytest.mark.anyio
async def test_update_against_deleted_entity_is_delete_conflict(user, make_op) -> None:
    await _seed_to_version_3(user, make_op)
    await _sync(user, "dev-a", [make_op("a-del", kind="DELETE", declared_version=3)])

    result = await _sync(user, "dev-b", [make_op("b-1", declared_version=3, payload={"notes": "n"})])

    assert result["results"][0]["status"] == "conflict"
    assert result["conflicts"][0]["conflictType"] == "delete"
    row = await _entity(user.org_id)
    assert row is not None
    assert row.deleted is True
    assert row.current_version == 4


@pytest.mark.anyio
async def test_update_declaring_tombstone_version_revives_entity(user, make_op) -> None:
    await _seed_to_version_3(user, make_op)
    await _sync(user, "dev-a", [make_op("a-del", kind="DELETE", declared_version=3)])

    result = await _sync(user, "dev-b", [make_op("b-1", declared_version=4, payload={"notes": "n"})])

    assert result["results"][0]["status"] == "applied"
    assert result["results"][0]["version"] == 5
    assert result["conflicts"] == []
    row = await _entity(user.org_id)
    assert row is not None
    assert row.deleted is False
    assert row.data_json == {"title": "a", "status": "open", "notes": "n"}


@pytest.mark.anyio
async def test_redundant_delete_is_a_noop(user, make_op) -> None:
    await _sync(user, "dev-a", [make_op("c", kind="CREATE", payload={"title": "t"})])
    await _sync(user, "dev-a", [make_op("d1", kind="DELETE", declared_version=1)])

    result = await _sync(user, "dev-b", [make_op("d2", kind="DELETE", declared_version=1)])

    assert result["results"][0]["status"] == "noop"
    assert result["conflicts"] == []
    assert result["errors"] == []
    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 2


@pytest.mark.anyio
async def test_resubmitted_batch_is_not_reapplied(user, make_op) -> None:
    batch = [
        make_op("op-1", kind="CREATE", payload={"title": "t"}),
        make_op("op-2", declared_version=1, payload={"title": "t2"}),
    ]

    first = await _sync(user, "dev-a", batch)
    second = await _sync(user, "dev-a", batch)

    assert [r["status"] for r in first["results"]] == ["applied", "applied"]
    assert [r["duplicate"] for r in second["results"]] == [True, True]
    assert [r["status"] for r in second["results"]] == ["applied", "applied"]
    assert [r["version"] for r in second["results"]] == [1, 2]
    assert second["operationsProcessed"] == 0

    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 2

    async with session_scope() as session:
        logged = (await session.exec(select(SyncOperationLog))).all()
    assert len(logged) == 2


@pytest.mark.anyio
async def test_reused_operation_id_with_new_payload_is_an_error(user, make_op) -> None:
    await _sync(user, "dev-a", [make_op("op-1", kind="CREATE", payload={"title": "t"})])

    result = await _sync(user, "dev-a", [make_op("op-1", kind="CREATE", payload={"title": "other"})])

    assert result["results"][0]["status"] == "error"
    assert len(result["errors"]) == 1
    row = await _entity(user.org_id)
    assert row is not None
    assert row.data_json == {"title": "t"}


@pytest.mark.anyio
async def test_corrupted_checksums_are_per_operation_errors(user, make_op) -> None:
    ops = [
        make_op(f"op-{i}", entity_id=f"e{i}", kind="CREATE", payload={"n": i}) for i in range(5)
    ]
    ops[1] = make_op("op-1", entity_id="e1", kind="CREATE", payload={"n": 1}, checksum="bad")
    ops[3] = make_op("op-3", entity_id="e3", kind="CREATE", payload={"n": 3}, checksum="f" * 64)

    result = await _sync(user, "dev-a", ops)

    assert len(result["errors"]) == 2
    assert {e["operationId"] for e in result["errors"]} == {"op-1", "op-3"}
    assert {e["code"] for e in result["errors"]} == {"checksum_mismatch"}
    assert result["operationsProcessed"] == 3
    applied = {r["operationId"] for r in result["results"] if r["status"] == "applied"}
    assert applied == {"op-0", "op-2", "op-4"}

    # Rejected operations are not logged, so the client can resend the same id.
    retry = await _sync(user, "dev-a", [make_op("op-1", entity_id="e1", kind="CREATE", payload={"n": 1})])
    assert retry["results"][0]["status"] == "applied"


@pytest.mark.anyio
async def test_duplicate_ids_inside_one_batch_apply_once(user, make_op) -> None:
    op = make_op("op-1", kind="CREATE", payload={"title": "t"})

    result = await _sync(user, "dev-a", [op, op])

    assert [r["status"] for r in result["results"]] == ["applied"]
    assert [e["code"] for e in result["errors"]] == ["duplicate"]
    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 1


@pytest.mark.anyio
async def test_operations_for_one_entity_apply_in_submission_order(user, make_op) -> None:
    result = await _sync(
        user,
        "dev-a",
        [
            make_op("c1", entity_id="e1", kind="CREATE", payload={"v": 1}),
            make_op("c2", entity_id="e2", kind="CREATE", payload={"v": 1}),
            make_op("u1", entity_id="e1", declared_version=1, payload={"v": 2}),
            make_op("u2", entity_id="e1", declared_version=2, payload={"v": 3}),
        ],
    )

    assert all(r["status"] == "applied" for r in result["results"])
    row = await _entity(user.org_id, "e1")
    assert row is not None
    assert row.current_version == 3
    assert row.data_json == {"v": 3}


@pytest.mark.anyio
async def test_server_changes_suppress_same_batch_echo(user, create_user, make_op) -> None:
    first = await _sync(user, "dev-a", [make_op("op-1", kind="CREATE", payload={"title": "t"})])
    assert first["serverChanges"] == []

    other = await _sync(user, "dev-b", [])
    assert [c["entityId"] for c in other["serverChanges"]] == ["e1"]
    change = other["serverChanges"][0]
    assert change["operation"] == "UPDATE"
    assert change["version"] == 1
    assert change["deviceId"] == "dev-a"

    # Other tenants never see it.
    stranger = await create_user("mallory", org_id="org-2")
    assert (await _sync(stranger, "dev-x", [], sync_mode="full"))["serverChanges"] == []


@pytest.mark.anyio
async def test_delta_honours_last_sync_watermark_and_limit(user, make_op, monkeypatch) -> None:
    await _sync(
        user,
        "dev-a",
        [make_op(f"op-{i}", entity_id=f"e{i}", kind="CREATE", payload={"n": i}) for i in range(3)],
    )

    future = await _sync(user, "dev-b", [], last_sync_ms=10**13)
    assert future["serverChanges"] == []

    monkeypatch.setattr(settings, "sync_delta_limit", 2)
    full = await _sync(user, "dev-b", [], sync_mode="full")
    assert len(full["serverChanges"]) == 2
    assert full["hasMoreChanges"] is True


@pytest.mark.anyio
async def test_deleted_entities_are_sent_as_delete_changes(user, make_op) -> None:
    await _sync(user, "dev-a", [make_op("c", kind="CREATE", payload={"title": "t"})])
    await _sync(user, "dev-a", [make_op("d", kind="DELETE", declared_version=1)])

    result = await _sync(user, "dev-b", [], sync_mode="full")

    assert [(c["entityId"], c["operation"]) for c in result["serverChanges"]] == [("e1", "DELETE")]


@pytest.mark.anyio
async def test_device_sync_state_tracks_counters(user, make_op) -> None:
    await _sync(user, "dev-a", [make_op("c", kind="CREATE", payload={"title": "t"})])
    result = await _sync(user, "dev-a", [make_op("u", declared_version=1, payload={"title": "u"})])

    state = result["syncState"]
    assert state["deviceId"] == "dev-a"
    assert state["syncCount"] == 2
    assert state["operationsApplied"] == 2
    assert state["lastBatchId"] == result["batchId"]
    assert state["lastSync"] is not None


@pytest.mark.anyio
async def test_lost_version_race_reruns_detection(user, make_op, monkeypatch) -> None:
    await _sync(user, "dev-a", [make_op("c", kind="CREATE", payload={"title": "t", "status": "open"})])

    original = entity_versions_repo.compare_and_swap
    calls = {"n": 0}

    async def racing_cas(session, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer commits version 2 between our read and our write.
            async with session_scope() as other:
                await original(
                    other,
                    org_id=user.org_id,
                    plan=ApplyPlan("task", "e1", 1, 2, {"title": "other", "status": "open"}, False),
                    modified_at_ms=1,
                    modified_by=int(user.id),
                    device_id="dev-c",
                    batch_id=None,
                    operation_id="racer",
                )
                await other.commit()
        return await original(session, **kwargs)

    monkeypatch.setattr(entity_versions_repo, "compare_and_swap", racing_cas)

    result = await _sync(user, "dev-a", [make_op("u", declared_version=1, payload={"status": "done"})])

    assert calls["n"] == 2
    assert result["results"][0]["status"] == "merged"
    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 3
    assert row.data_json == {"title": "other", "status": "done"}


@pytest.mark.anyio
async def test_timeout_leaves_operations_pending_for_retry(user, make_op, monkeypatch) -> None:
    batch = [make_op("op-1", kind="CREATE", payload={"title": "t"})]
    monkeypatch.setattr(settings, "sync_batch_timeout_seconds", -1.0)

    result = await _sync(user, "dev-a", batch)

    assert result["results"][0]["status"] == "pending"
    assert [e["reason"] for e in result["errors"]] == ["timeout"]
    async with session_scope() as session:
        pending = await sync_service.list_pending_operations(
            session=session, user=user, device_id="dev-a"
        )
    assert [p["operationId"] for p in pending] == ["op-1"]

    monkeypatch.setattr(settings, "sync_batch_timeout_seconds", 25.0)
    retry = await _sync(user, "dev-a", batch)
    assert retry["results"][0]["status"] == "applied"
    assert retry["results"][0]["duplicate"] is False


@pytest.mark.parametrize("policy", ["manual", "last_writer_wins"])
@pytest.mark.anyio
async def test_retry_overlapping_inflight_batch_keeps_first_outcome(
    user, make_op, monkeypatch, policy: str
) -> None:
    batch = [make_op("op-1", kind="CREATE", payload={"title": "t"})]
    monkeypatch.setattr(settings, "sync_overlap_policy", policy)
    monkeypatch.setattr(settings, "sync_batch_timeout_seconds", -1.0)
    await _sync(user, "dev-a", batch)
    monkeypatch.setattr(settings, "sync_batch_timeout_seconds", 25.0)

    original = entity_versions_repo.get_snapshot
    inner: dict[str, object] = {}

    async def snapshot_after_other_request(session, **kwargs):
        if not inner:
            # The client's next retry finishes while this request is mid-flight.
            inner["result"] = None
            inner["result"] = await _sync(user, "dev-a", batch)
        return await original(session, **kwargs)

    monkeypatch.setattr(entity_versions_repo, "get_snapshot", snapshot_after_other_request)

    outer = await _sync(user, "dev-a", batch)

    inner_result = inner["result"]
    assert isinstance(inner_result, dict)
    assert [(r["status"], r["version"]) for r in inner_result["results"]] == [("applied", 1)]

    assert outer["results"][0]["status"] == "applied"
    assert outer["results"][0]["version"] == 1
    assert outer["results"][0]["duplicate"] is True
    assert outer["conflicts"] == []
    assert outer["errors"] == []
    assert outer["operationsProcessed"] == 0

    row = await _entity(user.org_id)
    assert row is not None
    assert row.current_version == 1
    async with session_scope() as session:
        logged = (await session.exec(select(SyncOperationLog))).all()
        assert (await session.exec(select(SyncConflict))).all() == []
    assert [(r.operation_id, r.status, r.applied_version) for r in logged] == [("op-1", "applied", 1)]


@pytest.mark.anyio
async def test_exhausted_version_retries_report_stale_version(user, make_op, monkeypatch) -> None:
    await _sync(user, "dev-a", [make_op("c", kind="CREATE", payload={"title": "t"})])

    async def always_stale(session, *, plan, **kwargs):
        raise StaleVersionError("moved", expected_version=plan.expected_version)

    monkeypatch.setattr(entity_versions_repo, "compare_and_swap", always_stale)

    result = await _sync(user, "dev-a", [make_op("u", declared_version=1, payload={"title": "x"})])

    assert result["results"][0]["status"] == "error"
    assert result["results"][0]["code"] == "stale_version"
    assert [(e["code"], e["reason"]) for e in result["errors"]] == [
        ("stale_version", "version contention")
    ]


@pytest.mark.anyio
async def test_batch_level_validation(user, make_op, monkeypatch) -> None:
    with pytest.raises(ValidationError):
        await _sync(user, "  ", [])

    monkeypatch.setattr(settings, "sync_max_operations_per_batch", 1)
    with pytest.raises(ValidationError):
        await _sync(user, "dev-a", [make_op("a"), make_op("b")])

    async with session_scope() as session:
        assert (await session.exec(select(SyncConflict))).all() == []
