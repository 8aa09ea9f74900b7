#!/usr/bin/env python3
"""
Persisted state for replctl.

Everything lives as flat files under the configured state directory:
- operations/<id>.json   step log of each operation (source of truth for resume)
- snapshots/index.json   snapshot catalog, plus the dump files themselves
- locks/<replica>.lock   exclusive lock held while an operation runs
- cancel/<replica>       cooperative cancellation marker
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, List, Dict, Any

from .errors import InvalidArgument, OperationInProgress, SnapshotConsumed
from .models import Operation, Snapshot, utc_now

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON so readers never observe a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class OperationLog:
    """Stores one JSON step log per operation."""

    def __init__(self, state_dir: Path):
        self.directory = state_dir / "operations"

    def _path(self, operation_id: str) -> Path:
        return self.directory / f"{operation_id}.json"

    def save(self, operation: Operation) -> None:
        operation.updated_at = utc_now()
        write_json_atomic(self._path(operation.operation_id), operation.to_dict())

    def load(self, operation_id: str) -> Operation:
        path = self._path(operation_id)
        if not path.exists():
            raise InvalidArgument(f"Unknown operation: {operation_id}")
        with open(path) as f:
            return Operation.from_dict(json.load(f))

    def list(self, target: Optional[str] = None, kind: Optional[str] = None) -> List[Operation]:
        """All operations, oldest first, optionally filtered."""
        if not self.directory.exists():
            return []
        operations = []
        for path in self.directory.glob("*.json"):
            with open(path) as f:
                operation = Operation.from_dict(json.load(f))
            if target is not None and operation.target != target:
                continue
            if kind is not None and operation.kind != kind:
                continue
            operations.append(operation)
        return sorted(operations, key=lambda op: op.created_at)

    def latest(
        self,
        target: Optional[str] = None,
        kind: Optional[str] = None,
        resumable_only: bool = False,
    ) -> Optional[Operation]:
        for operation in reversed(self.list(target=target, kind=kind)):
            if resumable_only and not operation.resumable:
                continue
            return operation
        return None


class SnapshotStore:
    """Catalog of snapshot files. Snapshots stay until explicitly purged."""

    def __init__(self, snapshot_dir: Path):
        self.directory = snapshot_dir
        self.index_path = snapshot_dir / "index.json"

    def _read_index(self) -> Dict[str, Dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        with open(self.index_path) as f:
            return json.load(f)

    def _write_index(self, index: Dict[str, Dict[str, Any]]) -> None:
        write_json_atomic(self.index_path, index)

    def path_for(self, snapshot_id: str) -> Path:
        return self.directory / f"{snapshot_id}.sql"

    def add(self, snapshot: Snapshot) -> None:
        index = self._read_index()
        index[snapshot.snapshot_id] = snapshot.to_dict()
        self._write_index(index)

    def get(self, snapshot_id: str) -> Snapshot:
        index = self._read_index()
        if snapshot_id not in index:
            raise InvalidArgument(f"Unknown snapshot: {snapshot_id}")
        return Snapshot.from_dict(index[snapshot_id])

    def list(self) -> List[Snapshot]:
        snapshots = [Snapshot.from_dict(d) for d in self._read_index().values()]
        return sorted(snapshots, key=lambda s: s.created_at)

    def mark_consumed(self, snapshot_id: str, operation_id: str) -> Snapshot:
        """
        Record that a restore used the snapshot.

        Raises:
            SnapshotConsumed: if another operation already restored it
        """
        snapshot = self.get(snapshot_id)
        if snapshot.consumed_by and snapshot.consumed_by != operation_id:
            raise SnapshotConsumed(
                f"Snapshot {snapshot_id} was already restored by operation {snapshot.consumed_by}"
            )
        snapshot.consumed_by = operation_id
        self.add(snapshot)
        return snapshot

    def purge(self, snapshot_id: str) -> None:
        index = self._read_index()
        entry = index.pop(snapshot_id, None)
        if entry is None:
            raise InvalidArgument(f"Unknown snapshot: {snapshot_id}")
        path = Path(entry["path"])
        if path.exists():
            path.unlink()
        self._write_index(index)
        logger.info(f"Purged snapshot {snapshot_id}")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class OperationLock:
    """
    Exclusive per-replica lock. A second holder gets OperationInProgress.

    Usage:
        with OperationLock(state_dir, "replica", "provision"):
            ...
    """

    def __init__(self, state_dir: Path, target: str, kind: str = ""):
        self.path = state_dir / "locks" / f"{target}.lock"
        self.target = target
        self.kind = kind
        self._held = False

    def holder(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path) as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.holder() or {}
                pid = holder.get("pid")
                if isinstance(pid, int) and not _pid_alive(pid):
                    logger.warning(f"Removing stale lock for {self.target} held by dead pid {pid}")
                    self.path.unlink()
                    continue
                raise OperationInProgress(
                    f"Operation '{holder.get('kind', 'unknown')}' already running against "
                    f"{self.target} (pid {pid}, since {holder.get('since', '?')})"
                )
            with os.fdopen(fd, "w") as f:
                json.dump({"pid": os.getpid(), "kind": self.kind, "since": utc_now()}, f)
            self._held = True
            return
        raise OperationInProgress(f"Could not acquire lock for {self.target}")

    def release(self) -> None:
        if self._held:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            self._held = False

    def __enter__(self) -> "OperationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class CancelToken:
    """Cooperative cancellation, checked between steps only."""

    def __init__(self, state_dir: Path, target: str):
        self.path = state_dir / "cancel" / target

    def request(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(utc_now() + "\n")

    def is_set(self) -> bool:
        return self.path.exists()

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
