"""Tests for SyncEngine reconcile passes and local explicit actions."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeRemote, entity, ts

from localfirst_sync.api_client.connectivity import ConnectivityMonitor
from localfirst_sync.errors import RemoteError, RemoteUnavailable, Unauthorized
from localfirst_sync.sync import (
    PendingUploadTracker,
    ReconcileOutcome,
    compute_fingerprint,
)


def ids(engine) -> list[str]:
    return [e.id for e in engine.entities()]


async def until(predicate, rounds: int = 100) -> None:
    """Yield to the event loop until *predicate* holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ------------------------------------------------------------------
# Merge rules
# ------------------------------------------------------------------


class TestMerge:
    async def test_remote_only_is_adopted(self, make_engine):
        remote = FakeRemote([entity("a", 100, name="A")])
        engine = make_engine(remote)

        report = await engine.reconcile()

        assert report.outcome == ReconcileOutcome.COMPLETED
        assert report.adopted == 1
        assert ids(engine) == ["a"]

    async def test_local_newer_is_pushed_once_and_kept(self, make_engine):
        remote = FakeRemote([entity("A", 150, name="remote")])
        engine = make_engine(remote)
        engine.store.replace([entity("A", 200, name="local")])

        report = await engine.reconcile()

        assert remote.calls.count(("update", "A")) == 1
        assert report.pushed == 1
        kept = engine.get("A")
        assert kept.updated_at == ts(200)
        assert kept.model_extra["name"] == "local"

    async def test_remote_newer_is_adopted(self, make_engine):
        remote = FakeRemote([entity("A", 200, name="remote")])
        engine = make_engine(remote)
        engine.store.replace([entity("A", 150, name="local")])

        report = await engine.reconcile()

        assert remote.count("update") == 0
        assert report.adopted == 1
        assert engine.get("A").model_extra["name"] == "remote"

    async def test_remote_wins_tie(self, make_engine):
        remote = FakeRemote([entity("A", 100, name="remote")])
        engine = make_engine(remote)
        engine.store.replace([entity("A", 100, name="local")])

        await engine.reconcile()

        assert remote.count("update") == 0
        assert engine.get("A").model_extra["name"] == "remote"

    @pytest.mark.parametrize(
        ("local_at", "remote_at", "expected"),
        [(200, 100, "local"), (100, 200, "remote"), (150, 150, "remote")],
    )
    async def test_newest_timestamp_wins(self, make_engine, local_at, remote_at, expected):
        remote = FakeRemote([entity("A", remote_at, name="remote")])
        engine = make_engine(remote)
        engine.store.replace([entity("A", local_at, name="local")])

        await engine.reconcile()

        kept = engine.get("A")
        assert kept.model_extra["name"] == expected
        assert kept.updated_at == ts(max(local_at, remote_at))

    async def test_local_only_with_remote_id_is_dropped(self, make_engine):
        remote = FakeRemote([entity("a", 100)])
        engine = make_engine(remote)
        engine.store.replace([entity("a", 100), entity("srv-3", 100, name="gone")])

        report = await engine.reconcile()

        assert ids(engine) == ["a"]
        assert report.dropped == 1
        assert remote.count("create") == 0

    async def test_result_follows_remote_order(self, make_engine):
        remote = FakeRemote([entity("c", 1), entity("a", 1), entity("b", 1)])
        engine = make_engine(remote)
        engine.store.replace([entity("b", 1), entity("a", 1)])

        await engine.reconcile()

        assert ids(engine) == ["c", "a", "b"]


# ------------------------------------------------------------------
# Uploads of provisional entities
# ------------------------------------------------------------------


class TestUploads:
    async def test_provisional_is_replaced_by_remote_id(self, make_engine):
        remote = FakeRemote()
        remote.next_ids = ["srv-9"]
        engine = make_engine(remote)
        engine.store.replace([entity("tmp-1", 100, name="Leg day")])

        report = await engine.reconcile()

        assert report.created == 1
        assert ids(engine) == ["srv-9"]
        assert engine.get("srv-9").model_extra["name"] == "Leg day"
        assert remote.calls[-1] == ("create", {"updatedAt": "1970-01-01T00:01:40Z", "name": "Leg day"})

    async def test_create_failure_keeps_provisional(self, make_engine):
        remote = FakeRemote()
        remote.create_error = RemoteUnavailable("down", 503)
        engine = make_engine(remote)
        engine.store.replace([entity("tmp-1", 100, name="Leg day")])

        report = await engine.reconcile()

        assert report.outcome == ReconcileOutcome.COMPLETED
        assert report.create_failed == 1
        assert ids(engine) == ["tmp-1"]

    async def test_overlapping_passes_create_once(self, make_engine):
        remote = FakeRemote()
        remote.create_gate = asyncio.Event()
        engine = make_engine(remote)
        engine.store.replace([entity("tmp-1", 100, name="Leg day", createdAt="2024-05-01T10:00:00Z")])

        first = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("create") == 1)
        second = await engine.reconcile()
        remote.create_gate.set()
        await first

        assert remote.count("create") == 1
        assert second.skipped_in_flight == 1
        assert ids(engine) == ["srv-1"]

        await engine.reconcile()
        assert remote.count("create") == 1
        assert ids(engine) == ["srv-1"]

    async def test_slower_skipping_pass_does_not_restore_provisional(self, make_engine):
        pending = PendingUploadTracker()
        remote = FakeRemote()
        first_gate, second_gate = asyncio.Event(), asyncio.Event()
        remote.create_gates = [first_gate, second_gate]
        engine = make_engine(remote, pending=pending)
        one = entity("tmp-1", 100, name="one", createdAt="2024-05-01T10:00:00Z")
        engine.store.replace([one])

        first = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("create") == 1)
        engine.store.replace(
            [*engine.store.load(), entity("tmp-2", 110, name="two", createdAt="2024-05-01T10:01:00Z")]
        )
        second = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("create") == 2)

        first_gate.set()
        await first
        second_gate.set()
        report = await second

        assert report.skipped_in_flight == 1
        assert remote.count("create") == 2
        assert sorted(ids(engine)) == ["srv-1", "srv-2"]

        await engine.reconcile()
        assert remote.count("create") == 2
        assert sorted(ids(engine)) == ["srv-1", "srv-2"]
        assert pending.created_id(compute_fingerprint(one, ("name", "createdAt"))) is None

    async def test_created_mapping_released_once_listed(self, make_engine):
        pending = PendingUploadTracker()
        remote = FakeRemote()
        engine = make_engine(remote, pending=pending)
        local = entity("tmp-1", 100, name="Leg day", createdAt="2024-05-01T10:00:00Z")
        fingerprint = compute_fingerprint(local, ("name", "createdAt"))
        engine.store.replace([local])

        await engine.reconcile()
        assert pending.created_id(fingerprint) == "srv-1"

        await engine.reconcile()
        assert pending.created_id(fingerprint) is None
        assert ids(engine) == ["srv-1"]
        assert remote.count("create") == 1

    async def test_already_created_copy_is_folded(self, make_engine):
        pending = PendingUploadTracker()
        local = entity("tmp-1", 100, name="Leg day", createdAt="2024-05-01T10:00:00Z")
        pending.record_created(compute_fingerprint(local, ("name", "createdAt")), "srv-1")
        remote = FakeRemote([local.merged_with({"id": "srv-1"})])
        engine = make_engine(remote, pending=pending)
        engine.store.replace([local])

        await engine.reconcile()

        assert remote.count("create") == 0
        assert ids(engine) == ["srv-1"]

    async def test_delete_during_upload_removes_remote_copy(self, make_engine):
        remote = FakeRemote()
        remote.create_gate = asyncio.Event()
        engine = make_engine(remote)
        engine.store.replace([entity("tmp-1", 100, name="Leg day")])

        task = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("create") == 1)
        result = await engine.delete_local("tmp-1")
        remote.create_gate.set()
        await task

        assert result.success
        assert ids(engine) == []
        assert ("delete", "srv-1") in remote.calls
        assert engine.tombstones.is_deleted("srv-1")
        assert remote.records == {}


# ------------------------------------------------------------------
# Deletions
# ------------------------------------------------------------------


class TestTombstones:
    async def test_tombstoned_remote_entity_is_not_adopted(self, make_engine):
        remote = FakeRemote([entity("A", 100), entity("B", 100)])
        engine = make_engine(remote)
        engine.tombstones.mark_deleted("B")

        report = await engine.reconcile()

        assert ids(engine) == ["A"]
        assert ("delete", "B") in remote.calls
        assert report.deletes_retried == 1

    async def test_tombstone_wins_even_when_remote_copy_is_newer(self, make_engine):
        remote = FakeRemote([entity("B", 500)])
        engine = make_engine(remote)
        engine.store.replace([entity("B", 100)])
        engine.tombstones.mark_deleted("B")

        await engine.reconcile()

        assert engine.get("B") is None

    async def test_delete_retry_can_be_disabled(self, make_engine):
        remote = FakeRemote([entity("B", 100)])
        engine = make_engine(remote, retry_remote_deletes=False)
        engine.tombstones.mark_deleted("B")

        await engine.reconcile()

        assert remote.count("delete") == 0
        assert ids(engine) == []

    async def test_failed_remote_delete_is_not_resurrected(self, make_engine):
        remote = FakeRemote([entity("B", 100)])
        engine = make_engine(remote)
        await engine.reconcile()

        remote.delete_error = RemoteUnavailable("down", 503)
        result = await engine.delete_local("B")
        assert result.success
        assert "remote delete pending" in result.message

        for _ in range(3):
            await engine.reconcile()
            assert engine.get("B") is None

        remote.delete_error = None
        await engine.reconcile()
        assert remote.records == {}


# ------------------------------------------------------------------
# Failure handling
# ------------------------------------------------------------------


class TestFailures:
    @pytest.mark.parametrize(
        "error",
        [RemoteUnavailable("down", 503), Unauthorized("expired", 401), RemoteError("bad", 400)],
    )
    async def test_list_failure_leaves_store_untouched(self, make_engine, error):
        remote = FakeRemote()
        remote.list_error = error
        engine = make_engine(remote)
        engine.store.replace([entity("a", 100), entity("tmp-1", 100)])
        engine.tombstones.mark_deleted("z")
        before = engine.store.path.read_bytes()

        report = await engine.reconcile()

        assert report.outcome == ReconcileOutcome.ABORTED
        assert not report.success
        assert engine.store.path.read_bytes() == before
        assert remote.calls == [("list", "")]

    async def test_push_failure_keeps_local_and_continues(self, make_engine):
        remote = FakeRemote([entity("A", 100), entity("C", 100)])
        remote.update_errors = {"A"}
        engine = make_engine(remote)
        engine.store.replace([entity("A", 200, name="mine"), entity("C", 200)])

        report = await engine.reconcile()

        assert report.push_failed == 1
        assert report.pushed == 1
        assert engine.get("A").model_extra["name"] == "mine"
        assert remote.records["C"]["updatedAt"] == "1970-01-01T00:03:20Z"

    async def test_offline_skips_remote(self, make_engine):
        remote = FakeRemote([entity("a", 100)])
        engine = make_engine(remote, connectivity=ConnectivityMonitor(online=False))

        report = await engine.reconcile()

        assert report.outcome == ReconcileOutcome.OFFLINE
        assert remote.calls == []
        assert engine.get_status().last_outcome == ReconcileOutcome.OFFLINE

    async def test_unexpected_error_is_reported(self, make_engine):
        class Broken(FakeRemote):
            async def list(self, scope=""):
                raise RuntimeError("boom")

        engine = make_engine(Broken())

        report = await engine.reconcile()

        assert report.outcome == ReconcileOutcome.ABORTED
        assert "boom" in report.message


# ------------------------------------------------------------------
# Properties across passes
# ------------------------------------------------------------------


class TestConvergence:
    async def test_second_pass_changes_nothing(self, make_engine):
        remote = FakeRemote([entity("A", 150), entity("B", 300, name="remote")])
        engine = make_engine(remote)
        engine.store.replace([
            entity("A", 200, name="local"),
            entity("B", 100),
            entity("tmp-1", 100, name="new"),
        ])

        await engine.reconcile()
        first = engine.store.path.read_bytes()
        calls = len(remote.calls)

        report = await engine.reconcile()

        assert engine.store.path.read_bytes() == first
        assert remote.calls[calls:] == [("list", "")]
        assert report.adopted == report.pushed == report.created == 0

    async def test_scope_is_passed_to_listing(self, make_engine):
        remote = FakeRemote()
        engine = make_engine(remote)

        report = await engine.reconcile("poll-1")

        assert remote.calls == [("list", "poll-1")]
        assert report.scope == "poll-1"

    async def test_mid_pass_delete_is_not_resurrected(self, make_engine):
        remote = FakeRemote([entity("A", 100), entity("B", 100)])
        engine = make_engine(remote)
        await engine.reconcile()

        remote.list_gate = asyncio.Event()
        task = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("list") == 2)
        await engine.delete_local("A")
        remote.list_gate.set()
        await task

        assert ids(engine) == ["B"]

    async def test_mid_pass_create_survives_commit(self, make_engine):
        remote = FakeRemote([entity("A", 100)])
        remote.list_gate = asyncio.Event()
        engine = make_engine(remote)

        task = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("list") == 1)
        result = await engine.create_local({"name": "Arm day"})
        remote.list_gate.set()
        await task

        assert result.entity_id == "srv-1"
        assert ids(engine) == ["A", "srv-1"]

    async def test_mid_pass_edit_survives_commit(self, make_engine):
        remote = FakeRemote([entity("A", 100, name="old")])
        monitor = ConnectivityMonitor()
        engine = make_engine(remote, connectivity=monitor)
        await engine.reconcile()

        remote.list_gate = asyncio.Event()
        task = asyncio.create_task(engine.reconcile())
        await until(lambda: remote.count("list") == 2)
        monitor.set_online(False)
        await engine.update_local("A", {"name": "edited"})
        monitor.set_online(True)
        remote.list_gate.set()
        await task

        assert engine.get("A").model_extra["name"] == "edited"


# ------------------------------------------------------------------
# Local explicit actions
# ------------------------------------------------------------------


class TestLocalActions:
    async def test_create_offline_stays_provisional(self, make_engine):
        remote = FakeRemote()
        engine = make_engine(remote, connectivity=ConnectivityMonitor(online=False))

        result = await engine.create_local({"name": "Leg day"})

        assert result.success
        assert engine.is_provisional(result.entity_id)
        assert remote.calls == []
        stored = engine.get(result.entity_id)
        assert stored.model_extra["name"] == "Leg day"
        assert "createdAt" in stored.model_extra
        assert engine.get_status().provisional == 1

    async def test_create_online_swaps_to_remote_id(self, make_engine):
        remote = FakeRemote()
        engine = make_engine(remote)

        result = await engine.create_local({"name": "Leg day", "id": "ignored"})

        assert result.success
        assert result.entity_id == "srv-1"
        assert ids(engine) == ["srv-1"]
        assert "id" not in remote.calls[0][1]

    async def test_create_remote_failure_is_still_saved(self, make_engine):
        remote = FakeRemote()
        remote.create_error = RemoteUnavailable("down", 503)
        engine = make_engine(remote)

        result = await engine.create_local({"name": "Leg day"})

        assert result.success
        assert result.message == "Saved locally; will upload on next sync"
        assert engine.is_provisional(result.entity_id)

        remote.create_error = None
        await engine.reconcile()
        assert ids(engine) == ["srv-1"]

    async def test_update_pushes_and_bumps_timestamp(self, make_engine):
        remote = FakeRemote([entity("A", 100, name="old")])
        engine = make_engine(remote)
        await engine.reconcile()

        result = await engine.update_local("A", {"name": "new"})

        assert result.success
        assert engine.get("A").updated_at > ts(100)
        assert remote.records["A"]["name"] == "new"

    async def test_update_remote_failure_keeps_local_write(self, make_engine):
        remote = FakeRemote([entity("A", 100, name="old")])
        engine = make_engine(remote)
        await engine.reconcile()
        remote.update_errors = {"A"}

        result = await engine.update_local("A", {"name": "new"})

        assert not result.success
        assert engine.get("A").model_extra["name"] == "new"

        remote.update_errors = set()
        await engine.reconcile()
        assert remote.records["A"]["name"] == "new"

    async def test_update_unknown_entity(self, make_engine):
        result = await make_engine(FakeRemote()).update_local("nope", {"name": "x"})
        assert not result.success
        assert "not found" in result.message

    async def test_update_provisional_stays_local(self, make_engine):
        remote = FakeRemote()
        engine = make_engine(remote)
        engine.store.replace([entity("tmp-1", 100, name="a")])

        result = await engine.update_local("tmp-1", {"name": "b"})

        assert result.success
        assert remote.calls == []

    async def test_delete_tombstones_and_deletes_remotely(self, make_engine):
        remote = FakeRemote([entity("A", 100)])
        engine = make_engine(remote)
        await engine.reconcile()

        result = await engine.delete_local("A")

        assert result.success
        assert engine.get("A") is None
        assert engine.tombstones.is_deleted("A")
        assert remote.records == {}

    async def test_delete_unknown_entity(self, make_engine):
        engine = make_engine(FakeRemote())
        result = await engine.delete_local("nope")
        assert not result.success
        assert not engine.tombstones.is_deleted("nope")

    async def test_delete_provisional_makes_no_remote_call(self, make_engine):
        remote = FakeRemote()
        engine = make_engine(remote)
        engine.store.replace([entity("tmp-1", 100)])

        await engine.delete_local("tmp-1")
        await engine.reconcile()

        assert remote.count("delete") == 0
        assert remote.count("create") == 0
        assert ids(engine) == []
