"""Unit tests for the persisted step log, snapshot catalog, lock and cancel marker."""
import json
import os

import pytest

from replctl.errors import InvalidArgument, OperationInProgress, SnapshotConsumed
from replctl.models import Operation, OperationState, Snapshot, StepStatus
from replctl.state import CancelToken, OperationLock, OperationLog, SnapshotStore, write_json_atomic


def test_write_json_atomic_leaves_no_temp_file(tmp_path):
    path = tmp_path / "a" / "b.json"
    write_json_atomic(path, {"x": 1})
    assert json.loads(path.read_text()) == {"x": 1}
    assert list(path.parent.iterdir()) == [path]


class TestOperationLog:
    def test_round_trip(self, tmp_path):
        log = OperationLog(tmp_path)
        operation = Operation.new("refresh", "replica", ["a", "b"], database="shop")
        operation.steps[0].status = StepStatus.COMPLETED
        operation.steps[0].data["snapshot_id"] = "s1"
        log.save(operation)

        loaded = log.load(operation.operation_id)
        assert loaded.params == {"database": "shop"}
        assert loaded.step("a").status == StepStatus.COMPLETED
        assert loaded.step("a").data == {"snapshot_id": "s1"}
        assert loaded.last_completed() == "a"

    def test_unknown_operation(self, tmp_path):
        with pytest.raises(InvalidArgument):
            OperationLog(tmp_path).load("nope")

    def test_latest_resumable(self, tmp_path):
        log = OperationLog(tmp_path)
        failed = Operation.new("provision", "replica", ["a"])
        failed.state = OperationState.STEP_FAILED
        failed.created_at = "2026-01-01T00:00:00.000000Z"
        done = Operation.new("provision", "replica", ["a"])
        done.state = OperationState.COMPLETED
        done.created_at = "2026-01-02T00:00:00.000000Z"
        log.save(failed)
        log.save(done)

        assert log.latest(target="replica").operation_id == done.operation_id
        assert log.latest(target="replica", resumable_only=True).operation_id == failed.operation_id
        assert log.latest(target="other") is None
        assert [op.operation_id for op in log.list(kind="provision")] == [failed.operation_id, done.operation_id]


class TestSnapshotStore:
    def _snapshot(self, store, snapshot_id="s1"):
        path = store.path_for(snapshot_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("dump")
        snapshot = Snapshot(snapshot_id, "primary", ["app"], "uuid:1-5", path)
        store.add(snapshot)
        return snapshot

    def test_add_and_get(self, tmp_path):
        store = SnapshotStore(tmp_path / "snapshots")
        self._snapshot(store)
        snapshot = store.get("s1")
        assert snapshot.databases == ["app"]
        assert snapshot.position == "uuid:1-5"
        assert not snapshot.consumed

    def test_snapshot_restored_only_once(self, tmp_path):
        store = SnapshotStore(tmp_path / "snapshots")
        self._snapshot(store)
        store.mark_consumed("s1", "op1")
        # the same operation may retry its restore
        store.mark_consumed("s1", "op1")
        with pytest.raises(SnapshotConsumed):
            store.mark_consumed("s1", "op2")

    def test_purge_removes_file(self, tmp_path):
        store = SnapshotStore(tmp_path / "snapshots")
        snapshot = self._snapshot(store)
        store.purge("s1")
        assert not snapshot.path.exists()
        assert store.list() == []
        with pytest.raises(InvalidArgument):
            store.purge("s1")


class TestOperationLock:
    def test_second_holder_rejected(self, tmp_path):
        with OperationLock(tmp_path, "replica", "provision"):
            with pytest.raises(OperationInProgress, match="provision"):
                OperationLock(tmp_path, "replica", "refresh").acquire()
        # released on exit
        with OperationLock(tmp_path, "replica", "refresh"):
            pass

    def test_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with OperationLock(tmp_path, "replica", "provision"):
                raise RuntimeError("boom")
        assert OperationLock(tmp_path, "replica").holder() is None

    def test_stale_lock_reclaimed(self, tmp_path, monkeypatch):
        lock_path = tmp_path / "locks" / "replica.lock"
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text(json.dumps({"pid": 999999, "kind": "provision", "since": "x"}))
        monkeypatch.setattr("replctl.state._pid_alive", lambda pid: False)

        with OperationLock(tmp_path, "replica", "refresh") as lock:
            assert lock.holder()["pid"] == os.getpid()

    def test_locks_are_per_replica(self, tmp_path):
        with OperationLock(tmp_path, "replica-a", "provision"):
            with OperationLock(tmp_path, "replica-b", "provision"):
                pass


def test_cancel_token(tmp_path):
    token = CancelToken(tmp_path, "replica")
    assert not token.is_set()
    token.request()
    assert token.is_set()
    token.clear()
    token.clear()
    assert not token.is_set()
