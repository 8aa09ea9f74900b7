#!/usr/bin/env python3
"""
Operation step runner shared by the provisioning orchestrator and the
lifecycle controller.

An operation is an ordered list of Step objects. Each step declares a guard
(``already_done``), its action (``run``) and its compensating action
(``compensate``). The runner persists the step log before every transition,
so a crashed or cancelled operation can be resumed or rolled back from disk.
"""

import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from .admin import MySQLAdmin
from .config import NodeConfig, TopologyConfig
from .errors import InvalidArgument, OperationInProgress, ReplctlError, StepFailed
from .models import Operation, OperationState, StepRecord, StepStatus, TopologyState, utc_now
from .state import CancelToken, OperationLock, OperationLog, SnapshotStore
from .status import TopologyReader

logger = logging.getLogger(__name__)


class StepContext:
    """What a step may touch while it runs."""

    def __init__(
        self,
        config: TopologyConfig,
        admin: MySQLAdmin,
        reader: TopologyReader,
        snapshots: SnapshotStore,
        operation: Operation,
        topology: TopologyState,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        log: Optional[OperationLog] = None,
    ):
        self.config = config
        self.admin = admin
        self.reader = reader
        self.snapshots = snapshots
        self.operation = operation
        self.topology = topology
        self.sleep = sleep
        self.clock = clock
        self.log = log

    @property
    def primary(self) -> NodeConfig:
        return self.config.primary

    @property
    def replica(self) -> NodeConfig:
        return self.config.replica

    def record(self, name: str) -> StepRecord:
        return self.operation.step(name)

    def checkpoint(self, name: str, **data) -> None:
        """
        Persist compensation data of a running step before its next command.

        A step that fails halfway is rolled back from whatever it
        checkpointed, so record each effect before causing it.
        """
        self.record(name).data.update(data)
        if self.log is not None:
            self.log.save(self.operation)


class Step:
    """Base class of every operation step."""

    name = ""

    def already_done(self, ctx: StepContext) -> bool:
        """Precondition guard: True when the step's effect is already in place."""
        return False

    def run(self, ctx: StepContext) -> Optional[Dict[str, Any]]:
        """Perform the step. Returned data is merged into the step record."""
        raise NotImplementedError

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        """Undo what ``run`` did, using the data it recorded. Must be idempotent."""


@dataclass
class OperationResult:
    operation: Operation
    before: TopologyState
    after: TopologyState


class OperationRunner:
    """Drives an operation's steps and keeps its log current."""

    def __init__(self, log: OperationLog, cancel: CancelToken):
        self.log = log
        self.cancel = cancel

    def _fail(self, operation: Operation, record: StepRecord, error: Exception) -> StepFailed:
        record.status = StepStatus.FAILED
        record.error = f"{type(error).__name__}: {error}"
        record.finished_at = utc_now()
        last_completed = operation.last_completed()
        operation.state = OperationState.STEP_FAILED
        operation.error = {
            "step": record.name,
            "type": type(error).__name__,
            "message": str(error),
            "last_completed": last_completed,
        }
        self.log.save(operation)
        logger.error(f"[{operation.kind} {operation.operation_id}] step {record.name} failed: {error}")
        return StepFailed(operation.operation_id, record.name, error, last_completed)

    def run(
        self,
        operation: Operation,
        steps: List[Step],
        ctx: StepContext,
        from_start: bool = False,
    ) -> Operation:
        """
        Execute the operation's pending steps in order.

        Args:
            operation: Operation whose log is updated
            steps: Step objects, matched to records by name
            ctx: Step context
            from_start: Re-run every step through its guard instead of
                skipping the ones already done. Recorded data is kept.

        Returns:
            The operation, completed or cancelled

        Raises:
            StepFailed: a step raised; the log names the step and the
                last completed one
        """
        by_name = {step.name: step for step in steps}

        if from_start:
            for record in operation.steps:
                if record.status != StepStatus.COMPENSATED:
                    record.status = StepStatus.PENDING
                    record.error = ""

        for record in operation.steps:
            if record.done:
                continue
            step = by_name[record.name]

            if self.cancel.is_set():
                self.cancel.clear()
                operation.state = OperationState.CANCELLED
                operation.error = {
                    "step": record.name,
                    "type": "Cancelled",
                    "message": "cancelled by operator",
                    "last_completed": operation.last_completed(),
                }
                self.log.save(operation)
                logger.warning(f"[{operation.kind} {operation.operation_id}] cancelled before step {record.name}")
                return operation

            record.status = StepStatus.RUNNING
            record.started_at = utc_now()
            record.error = ""
            operation.state = OperationState.RUNNING
            operation.current_step = record.name
            self.log.save(operation)

            try:
                if step.already_done(ctx):
                    logger.info(f"[{operation.kind} {operation.operation_id}] {record.name}: already in place, skipping")
                    record.status = StepStatus.SKIPPED
                else:
                    logger.info(f"[{operation.kind} {operation.operation_id}] {record.name}")
                    record.data.update(step.run(ctx) or {})
                    record.status = StepStatus.COMPLETED
            except (ReplctlError, OSError) as e:
                raise self._fail(operation, record, e) from e

            record.finished_at = utc_now()
            self.log.save(operation)

        operation.state = OperationState.COMPLETED
        operation.current_step = None
        operation.error = None
        self.log.save(operation)
        logger.info(f"[{operation.kind} {operation.operation_id}] completed")
        return operation

    def rollback(self, operation: Operation, steps: List[Step], ctx: StepContext) -> Operation:
        """
        Run compensations for every step that recorded an effect, newest first.

        Raises:
            InvalidArgument: operation already rolled back
            StepFailed: a compensation raised
        """
        if operation.state == OperationState.ROLLED_BACK:
            raise InvalidArgument(f"Operation {operation.operation_id} is already rolled back")

        by_name = {step.name: step for step in steps}
        for record in reversed(operation.steps):
            # only steps that recorded data changed anything
            if record.status == StepStatus.COMPENSATED or not record.data:
                continue
            operation.current_step = record.name
            self.log.save(operation)
            try:
                by_name[record.name].compensate(ctx, record)
            except (ReplctlError, OSError) as e:
                raise self._fail(operation, record, e) from e
            logger.info(f"[{operation.kind} {operation.operation_id}] compensated {record.name}")
            record.status = StepStatus.COMPENSATED
            record.finished_at = utc_now()
            self.log.save(operation)

        operation.state = OperationState.ROLLED_BACK
        operation.current_step = None
        operation.error = None
        self.log.save(operation)
        return operation


class OperationService:
    """
    Common plumbing of the orchestrator and the lifecycle controller:
    locking, step context, start-or-resume and rollback.
    """

    kinds: tuple = ()

    def __init__(
        self,
        config: TopologyConfig,
        admin: MySQLAdmin,
        reader: TopologyReader,
        log: OperationLog,
        snapshots: SnapshotStore,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.admin = admin
        self.reader = reader
        self.log = log
        self.snapshots = snapshots
        self.sleep = sleep
        self.clock = clock
        self.runner = OperationRunner(log, CancelToken(config.state_dir, config.replica.name))

    @property
    def target(self) -> str:
        return self.config.replica.name

    @contextmanager
    def lock(self, kind: str) -> Iterator[OperationLock]:
        """
        Hold the replica's lock. A cancel marker left from before the lock
        was taken is discarded; one dropped while it is held is honoured.
        """
        with OperationLock(self.config.state_dir, self.target, kind) as held:
            self.runner.cancel.clear()
            yield held

    def context(self, operation: Operation, topology: TopologyState) -> StepContext:
        return StepContext(
            self.config, self.admin, self.reader, self.snapshots,
            operation, topology, sleep=self.sleep, clock=self.clock, log=self.log,
        )

    def steps_for(self, operation: Operation) -> List[Step]:
        raise NotImplementedError

    def start_or_resume(self, kind: str, step_names: List[str], **params) -> Operation:
        """
        Reuse the latest unfinished operation of the same kind and parameters,
        or start a new one.

        Raises:
            OperationInProgress: an unfinished refresh of something else is
                pending; it leaves replication paused and must be finished first
        """
        pending = self.log.latest(target=self.target, resumable_only=True)
        if pending is not None:
            if pending.kind == kind and pending.params == params:
                logger.info(f"Resuming {kind} operation {pending.operation_id} ({pending.state.value})")
                return pending
            if pending.kind == "refresh":
                raise OperationInProgress(
                    f"Unfinished refresh {pending.operation_id} of "
                    f"'{pending.params.get('database')}' on {self.target}; "
                    "resume it or roll it back first"
                )
        operation = Operation.new(kind, self.target, step_names, **params)
        self.log.save(operation)
        return operation

    def execute(
        self,
        operation: Operation,
        topology: TopologyState,
        from_start: bool = False,
    ) -> OperationResult:
        ctx = self.context(operation, topology)
        self.runner.run(operation, self.steps_for(operation), ctx, from_start=from_start)
        return OperationResult(operation, before=topology, after=self.reader.observe())

    def rollback(self, topology: TopologyState, operation_id: Optional[str] = None) -> OperationResult:
        """
        Roll back an operation (the latest one of this service's kinds by default).

        Returns:
            OperationResult with the rolled-back operation
        """
        with self.lock("rollback"):
            if operation_id:
                operation = self.log.load(operation_id)
            else:
                operation = next(
                    (op for op in reversed(self.log.list(target=self.target))
                     if op.kind in self.kinds and op.state != OperationState.ROLLED_BACK),
                    None,
                )
                if operation is None:
                    raise InvalidArgument(f"No operation to roll back on {self.target}")
            if operation.kind not in self.kinds:
                raise InvalidArgument(f"Operation {operation.operation_id} is a {operation.kind}, not one of {self.kinds}")
            logger.info(f"Rolling back {operation.kind} operation {operation.operation_id}")
            ctx = self.context(operation, topology)
            self.runner.rollback(operation, self.steps_for(operation), ctx)
            return OperationResult(operation, before=topology, after=self.reader.observe())
