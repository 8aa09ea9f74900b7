#!/usr/bin/env python3
"""
Provisioning Orchestrator for replctl.

Provisioning a replica follows the runbook:

    creating-credentials -> configuring-admin-ui -> snapshotting
        -> restoring -> arming-replication -> verifying

Each step is guarded, so re-running a failed provision from the beginning
never repeats a side effect that is already in place, and each step records
what it changed so rollback can undo exactly that.
"""

import uuid
import logging
from typing import Any, Dict, List, Optional

from .errors import InvalidArgument, NodeConnectionError, ParseError, VerificationTimeout
from .models import (
    LinkState, Operation, OperationState, ReplicationLink, Snapshot, StepRecord, StepStatus, TopologyState,
)
from .operations import OperationResult, OperationService, Step, StepContext
from .polling import Backoff, PollExhausted, poll_until

logger = logging.getLogger(__name__)

PROVISION = "provision"


def replicating_from_primary(ctx: StepContext) -> bool:
    """True when the replica already streams from the configured primary."""
    link = ctx.reader.read_status(ctx.replica)
    return (
        link is not None
        and link.is_streaming
        and link.source_host == ctx.primary.internal_host
    )


def wait_for_streaming(ctx: StepContext) -> ReplicationLink:
    """
    Poll the replica's link until it streams.

    Raises:
        VerificationTimeout: not streaming within verify_timeout
    """
    backoff = Backoff.fixed(ctx.config.verify_interval, ctx.config.verify_timeout)
    try:
        return poll_until(
            lambda: ctx.reader.read_status(ctx.replica),
            lambda link: link is not None and link.is_streaming,
            backoff,
            retry_on=(NodeConnectionError, ParseError),
            sleep=ctx.sleep,
            clock=ctx.clock,
            label=f"{ctx.replica.name} to stream",
        )
    except PollExhausted as e:
        link = e.last_value
        if link is not None:
            detail = f"link is {link.state.value}"
            if link.last_error:
                detail += f" ({link.last_error})"
        elif e.last_error is not None:
            detail = str(e.last_error)
        else:
            detail = "no replication link configured"
        raise VerificationTimeout(
            f"{ctx.replica.name} not streaming after {ctx.config.verify_timeout:g}s: {detail}"
        ) from None


def remember_link(ctx: StepContext, step_name: str) -> Optional[Dict[str, Any]]:
    """
    The replica's link as it was before this operation touched it.

    Read once and checkpointed into the step's record, so reruns keep the
    original link rather than the one this operation armed.
    """
    data = ctx.record(step_name).data
    if "prior_link" not in data:
        link = ctx.reader.read_status(ctx.replica)
        prior = None
        if link is not None:
            prior = {
                "host": link.source_host,
                "port": link.source_port,
                "running": link.state != LinkState.DISCONNECTED,
            }
        ctx.checkpoint(step_name, prior_link=prior)
    return data["prior_link"]


class CreateCredentials(Step):
    """Create the replication user on the primary."""

    name = "creating-credentials"

    def already_done(self, ctx: StepContext) -> bool:
        return ctx.admin.user_exists(ctx.primary, ctx.config.replication_user)

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        # CREATE USER may succeed and the GRANT fail
        ctx.checkpoint(self.name, created_user=ctx.config.replication_user)
        ctx.admin.create_replication_user(
            ctx.primary, ctx.config.replication_user, ctx.config.replication_password
        )
        return {"created_user": ctx.config.replication_user}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        user = record.data.get("created_user")
        if user:
            ctx.admin.drop_user(ctx.primary, user)


class ConfigureAdminUI(Step):
    """
    Create phpMyAdmin's control user and configuration-storage database on
    the primary. Done before the snapshot so the replica receives the
    storage database with the rest of the data.
    """

    name = "configuring-admin-ui"

    def already_done(self, ctx: StepContext) -> bool:
        ui = ctx.config.admin_ui
        return (
            ctx.admin.user_exists(ctx.primary, ui.control_user)
            and ctx.admin.database_exists(ctx.primary, ui.pmadb)
        )

    def run(self, ctx: StepContext) -> Optional[Dict[str, Any]]:
        ui = ctx.config.admin_ui
        if not ctx.admin.database_exists(ctx.primary, ui.pmadb):
            ctx.checkpoint(self.name, created_database=ui.pmadb)
        if not ctx.admin.user_exists(ctx.primary, ui.control_user):
            ctx.checkpoint(self.name, created_user=ui.control_user)
        ctx.admin.create_admin_storage(ctx.primary, ui.control_user, ui.control_password, ui.pmadb)
        return None

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        user = record.data.get("created_user")
        if user:
            ctx.admin.drop_user(ctx.primary, user)
        database = record.data.get("created_database")
        if database:
            ctx.admin.drop_database(ctx.primary, database)


class TakeSnapshot(Step):
    """Dump the primary's user databases into a new snapshot."""

    name = "snapshotting"

    def _reusable(self, ctx: StepContext) -> Optional[Snapshot]:
        snapshot_id = ctx.record(self.name).data.get("snapshot_id")
        if not snapshot_id:
            return None
        try:
            snapshot = ctx.snapshots.get(snapshot_id)
        except InvalidArgument:
            return None
        if snapshot.consumed and snapshot.consumed_by != ctx.operation.operation_id:
            return None
        return snapshot if snapshot.path.exists() else None

    def already_done(self, ctx: StepContext) -> bool:
        return self._reusable(ctx) is not None or replicating_from_primary(ctx)

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        snapshot_id = f"{ctx.operation.operation_id}-{uuid.uuid4().hex[:6]}"
        path = ctx.snapshots.path_for(snapshot_id)
        databases = ctx.admin.list_databases(ctx.primary)
        position = ctx.admin.dump(ctx.primary, databases, path)
        ctx.snapshots.add(Snapshot(
            snapshot_id=snapshot_id,
            source=ctx.primary.name,
            databases=databases,
            position=position,
            path=path,
        ))
        logger.info(f"Snapshot {snapshot_id} at position {position or '(empty)'}")
        return {"snapshot_id": snapshot_id, "position": position, "databases": databases}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        snapshot_id = record.data.get("snapshot_id")
        if not snapshot_id:
            return
        if any(s.snapshot_id == snapshot_id for s in ctx.snapshots.list()):
            ctx.snapshots.purge(snapshot_id)


class RestoreSnapshot(Step):
    """Seed the replica from the operation's snapshot."""

    name = "restoring"

    def _snapshot(self, ctx: StepContext) -> Snapshot:
        snapshot_id = ctx.record(TakeSnapshot.name).data.get("snapshot_id")
        if not snapshot_id:
            raise InvalidArgument("No snapshot recorded for this operation")
        return ctx.snapshots.get(snapshot_id)

    def already_done(self, ctx: StepContext) -> bool:
        restored = ctx.record(self.name).data.get("restored_snapshot")
        if restored and restored == ctx.record(TakeSnapshot.name).data.get("snapshot_id"):
            return True
        return replicating_from_primary(ctx)

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        snapshot = self._snapshot(ctx)
        # refuses a snapshot another operation already restored
        ctx.snapshots.mark_consumed(snapshot.snapshot_id, ctx.operation.operation_id)
        data = ctx.record(self.name).data

        # a rerun after a partial restore must not count its databases as pre-existing
        if "created_databases" not in data:
            existing = set(ctx.admin.list_databases(ctx.replica))
            ctx.checkpoint(
                self.name,
                created_databases=[d for d in snapshot.databases if d not in existing],
            )
        remember_link(ctx, self.name)

        if ctx.reader.read_status(ctx.replica) is not None:
            ctx.checkpoint(self.name, stopped_link=True)
            ctx.admin.stop_replica(ctx.replica)
        if snapshot.databases:
            ctx.admin.reset_gtids(ctx.replica)
            ctx.admin.restore(ctx.replica, snapshot.path)

        return {"restored_snapshot": snapshot.snapshot_id}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        for database in record.data.get("created_databases", []):
            ctx.admin.drop_database(ctx.replica, database, disable_binlog=True)
        prior = record.data.get("prior_link")
        armed = ctx.record(ArmReplication.name).data.get("armed")
        # once armed, ArmReplication's compensation puts the old link back
        if record.data.get("stopped_link") and not armed and prior and prior["running"]:
            ctx.admin.start_replica(ctx.replica)


class ArmReplication(Step):
    """Point the replica at the primary and start the replication threads."""

    name = "arming-replication"

    def already_done(self, ctx: StepContext) -> bool:
        return replicating_from_primary(ctx)

    def run(self, ctx: StepContext) -> Optional[Dict[str, Any]]:
        restoring = ctx.record(RestoreSnapshot.name).data
        if "prior_link" in restoring and "prior_link" not in ctx.record(self.name).data:
            ctx.checkpoint(self.name, prior_link=restoring["prior_link"])
        prior = remember_link(ctx, self.name)

        ctx.checkpoint(self.name, armed=True, had_link=prior is not None)
        if ctx.reader.read_status(ctx.replica) is not None:
            ctx.admin.stop_replica(ctx.replica)
        ctx.admin.change_source(
            ctx.replica, ctx.primary,
            ctx.config.replication_user, ctx.config.replication_password,
        )
        ctx.admin.start_replica(ctx.replica)
        return None

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        if not record.data.get("armed"):
            return
        prior = record.data.get("prior_link")
        if prior is None:
            ctx.admin.reset_replica_all(ctx.replica)
            return

        current = ctx.reader.read_status(ctx.replica)
        moved = current is None or (current.source_host, current.source_port) != (prior["host"], prior["port"])
        if current is not None and (moved or not prior["running"]):
            ctx.admin.stop_replica(ctx.replica)
        if moved:
            logger.warning(
                f"Pointing {ctx.replica.name} back at {prior['host']}:{prior['port']}; "
                "the previous link's credentials cannot be read back and are not restored"
            )
            ctx.admin.point_source(ctx.replica, prior["host"], prior["port"])
        if prior["running"]:
            ctx.admin.start_replica(ctx.replica)


class VerifyStreaming(Step):
    """Wait until the replica reports a streaming link."""

    name = "verifying"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        link = wait_for_streaming(ctx)
        return {"position": link.position, "seconds_behind": link.seconds_behind}


PROVISION_STEPS = [
    CreateCredentials.name,
    ConfigureAdminUI.name,
    TakeSnapshot.name,
    RestoreSnapshot.name,
    ArmReplication.name,
    VerifyStreaming.name,
]


class ProvisioningOrchestrator(OperationService):
    """
    Sequences replica provisioning with rollback.

    Usage:
        orchestrator = ProvisioningOrchestrator(config, admin, reader, log, snapshots)
        result = orchestrator.provision(reader.observe())
    """

    kinds = (PROVISION,)

    def steps_for(self, operation: Operation) -> List[Step]:
        return [
            CreateCredentials(), ConfigureAdminUI(), TakeSnapshot(), RestoreSnapshot(),
            ArmReplication(), VerifyStreaming(),
        ]

    def provision(self, topology: TopologyState) -> OperationResult:
        """
        Provision the replica from the primary.

        An unfinished provision is re-run from its first step; guards skip
        what is already in place.

        Args:
            topology: Current topology state

        Returns:
            OperationResult with the completed (or cancelled) operation

        Raises:
            OperationInProgress: another operation holds the replica
            StepFailed: a step failed; VerificationTimeout is its cause
                when the link did not stream in time
        """
        with self.lock(PROVISION):
            operation = self.start_or_resume(PROVISION, PROVISION_STEPS)
            return self.execute(operation, topology, from_start=True)

    def verify(self, topology: TopologyState) -> OperationResult:
        """
        Resume only the verification step of the latest provision.

        Raises:
            InvalidArgument: no provision to verify, or it failed before
                reaching verification
            StepFailed: verification timed out again
        """
        with self.lock("verify"):
            operation = self.log.latest(target=self.target, kind=PROVISION)
            if operation is None:
                raise InvalidArgument(f"No provision operation recorded for {self.target}")
            if operation.state == OperationState.ROLLED_BACK:
                raise InvalidArgument(f"Provision {operation.operation_id} was rolled back")

            unfinished = [
                r.name for r in operation.steps
                if not r.done and r.name != VerifyStreaming.name
            ]
            if unfinished:
                raise InvalidArgument(
                    f"Provision {operation.operation_id} stopped before verification "
                    f"(pending: {', '.join(unfinished)}); run provision again"
                )

            verify_record = operation.step(VerifyStreaming.name)
            if verify_record.done:
                # re-check a completed provision
                verify_record.status = StepStatus.PENDING
            return self.execute(operation, topology)
