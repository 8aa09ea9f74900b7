#!/usr/bin/env python3
"""
Data model shared by the reader, the orchestrator and the lifecycle controller.

TopologyState is an immutable value: readers return a new one instead of
mutating a global "current topology".
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class LinkState(Enum):
    """Connection state of a replication link."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(frozen=True)
class ReplicationLink:
    """Association from a replica to the primary it streams from."""
    replica: str
    source_host: str
    source_port: Optional[int]
    state: LinkState
    position: str = ""
    seconds_behind: Optional[int] = None
    last_error: str = ""
    io_running: str = ""
    sql_running: str = ""

    @property
    def is_streaming(self) -> bool:
        return self.state == LinkState.STREAMING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replica": self.replica,
            "source_host": self.source_host,
            "source_port": self.source_port,
            "state": self.state.value,
            "position": self.position,
            "seconds_behind": self.seconds_behind,
            "last_error": self.last_error,
            "io_running": self.io_running,
            "sql_running": self.sql_running,
        }


@dataclass(frozen=True)
class NodeStatus:
    """Last-known status of a node, as observed by the topology reader."""
    name: str
    role: str
    reachable: bool = False
    read_only: Optional[bool] = None
    databases: tuple = ()
    link: Optional[ReplicationLink] = None
    degraded: bool = False
    error: str = ""
    observed_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "reachable": self.reachable,
            "read_only": self.read_only,
            "databases": list(self.databases),
            "link": self.link.to_dict() if self.link else None,
            "degraded": self.degraded,
            "error": self.error,
            "observed_at": self.observed_at,
        }


@dataclass(frozen=True)
class TopologyState:
    """Point-in-time view of the primary and replica."""
    primary: NodeStatus
    replica: NodeStatus

    @classmethod
    def unknown(cls, primary_name: str, replica_name: str) -> "TopologyState":
        return cls(
            primary=NodeStatus(name=primary_name, role="primary"),
            replica=NodeStatus(name=replica_name, role="replica"),
        )

    @property
    def link(self) -> Optional[ReplicationLink]:
        return self.replica.link

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary.to_dict(),
            "replica": self.replica.to_dict(),
        }


@dataclass
class Snapshot:
    """Point-in-time export of primary data, tagged with a position token."""
    snapshot_id: str
    source: str
    databases: List[str]
    position: str
    path: Path
    created_at: str = field(default_factory=utc_now)
    consumed_by: Optional[str] = None

    @property
    def consumed(self) -> bool:
        return self.consumed_by is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "source": self.source,
            "databases": list(self.databases),
            "position": self.position,
            "path": str(self.path),
            "created_at": self.created_at,
            "consumed_by": self.consumed_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        data = data.copy()
        data["path"] = Path(data["path"])
        return cls(**data)


class OperationState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    STEP_FAILED = "step-failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled-back"
    COMPLETED = "completed"


# States from which an operation can be resumed.
RESUMABLE_STATES = (
    OperationState.PENDING,
    OperationState.RUNNING,
    OperationState.STEP_FAILED,
    OperationState.CANCELLED,
)


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    COMPENSATED = "compensated"


@dataclass
class StepRecord:
    """Outcome of a single step, persisted in the operation log."""
    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(
            name=data["name"],
            status=StepStatus(data.get("status", "pending")),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            error=data.get("error", ""),
            data=dict(data.get("data") or {}),
        )


@dataclass
class Operation:
    """A named multi-step workflow instance and its step log."""
    kind: str
    target: str
    steps: List[StepRecord]
    params: Dict[str, Any] = field(default_factory=dict)
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: OperationState = OperationState.PENDING
    current_step: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def new(cls, kind: str, target: str, step_names: List[str], **params) -> "Operation":
        return cls(
            kind=kind,
            target=target,
            steps=[StepRecord(name=name) for name in step_names],
            params=params,
        )

    @property
    def resumable(self) -> bool:
        return self.state in RESUMABLE_STATES

    def step(self, name: str) -> StepRecord:
        for record in self.steps:
            if record.name == name:
                return record
        raise KeyError(name)

    def last_completed(self) -> Optional[str]:
        last = None
        for record in self.steps:
            if record.done:
                last = record.name
        return last

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "target": self.target,
            "params": self.params,
            "state": self.state.value,
            "current_step": self.current_step,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        return cls(
            operation_id=data["operation_id"],
            kind=data["kind"],
            target=data["target"],
            params=dict(data.get("params") or {}),
            state=OperationState(data.get("state", "pending")),
            current_step=data.get("current_step"),
            error=data.get("error"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            steps=[StepRecord.from_dict(s) for s in data.get("steps", [])],
        )
