#!/usr/bin/env python3
"""
Lifecycle Controller for replctl.

Handles what happens to an already provisioned pair:
- restart recovery (bounded exponential backoff until the link streams)
- refresh of one database from an external dump
- adding and removing databases through the primary
"""

import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .admin import SYSTEM_DATABASES
from .errors import (
    InvalidArgument, NodeConnectionError, ParseError, RecoveryTimeout, VerificationTimeout,
)
from .models import Operation, ReplicationLink, Snapshot, StepRecord, TopologyState, LinkState
from .operations import OperationResult, OperationService, Step, StepContext
from .orchestrator import VerifyStreaming
from .polling import Backoff, PollExhausted, poll_until

logger = logging.getLogger(__name__)

REFRESH = "refresh"
ADD_DATABASE = "add-database"
REMOVE_DATABASE = "remove-database"

_DATABASE_NAME = re.compile(r"^[A-Za-z0-9_$-]{1,64}$")


def validate_database_name(name: str) -> str:
    """
    Reject names the runbook must never touch.

    Raises:
        InvalidArgument: system schema or malformed name
    """
    if not _DATABASE_NAME.match(name or ""):
        raise InvalidArgument(f"Invalid database name: {name!r}")
    if name.lower() in SYSTEM_DATABASES:
        raise InvalidArgument(f"Refusing to manage system database {name!r}")
    return name


def _wait_for_database(ctx: StepContext, database: str, present: bool) -> None:
    """
    Poll the replica until the database appears (or disappears).

    Raises:
        VerificationTimeout: replica did not converge in time
    """
    backoff = Backoff.fixed(ctx.config.verify_interval, ctx.config.verify_timeout)
    try:
        poll_until(
            lambda: ctx.admin.database_exists(ctx.replica, database),
            lambda exists: exists == present,
            backoff,
            retry_on=(NodeConnectionError,),
            sleep=ctx.sleep,
            clock=ctx.clock,
            label=f"{database} on {ctx.replica.name}",
        )
    except PollExhausted:
        verb = "appear" if present else "disappear"
        raise VerificationTimeout(
            f"{database} did not {verb} on {ctx.replica.name} within {ctx.config.verify_timeout:g}s"
        ) from None


# Refresh steps

class PauseReplication(Step):
    name = "pausing-replication"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        ctx.checkpoint(self.name, paused=True)
        ctx.admin.stop_replica(ctx.replica)
        return {"paused": True}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        if record.data.get("paused"):
            ctx.admin.start_replica(ctx.replica)


class RecreateDatabase(Step):
    """Drop and recreate the database on the primary. Runs at most once per refresh."""

    name = "recreating-database"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        database = ctx.operation.params["database"]
        ctx.checkpoint(self.name, recreated=database)
        ctx.admin.drop_database(ctx.primary, database, disable_binlog=True)
        ctx.admin.create_database(ctx.primary, database, disable_binlog=True)
        return {"recreated": database}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        logger.warning(
            f"Cannot undo recreation of {record.data.get('recreated')} on {ctx.primary.name}; "
            "the previous contents are gone"
        )


class ImportDump(Step):
    name = "importing-dump"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        database = ctx.operation.params["database"]
        dump = Path(ctx.operation.params["dump"])
        if not dump.exists():
            raise InvalidArgument(f"Dump file not found: {dump}")
        ctx.admin.restore(ctx.primary, dump, database=database, disable_binlog=True)
        return {"imported": str(dump)}


class SnapshotDatabase(Step):
    """Export the freshly imported database for the replica."""

    name = "snapshotting"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        database = ctx.operation.params["database"]
        snapshot_id = f"{ctx.operation.operation_id}-{database}"
        path = ctx.snapshots.path_for(snapshot_id)
        position = ctx.admin.dump_schema(ctx.primary, database, path)
        ctx.snapshots.add(Snapshot(
            snapshot_id=snapshot_id,
            source=ctx.primary.name,
            databases=[database],
            position=position,
            path=path,
        ))
        return {"snapshot_id": snapshot_id, "position": position}


class RestoreDatabase(Step):
    """Replace the database on the replica with the snapshot."""

    name = "restoring"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        database = ctx.operation.params["database"]
        snapshot_id = ctx.record(SnapshotDatabase.name).data["snapshot_id"]
        snapshot = ctx.snapshots.mark_consumed(snapshot_id, ctx.operation.operation_id)
        ctx.admin.drop_database(ctx.replica, database, disable_binlog=True)
        ctx.admin.create_database(ctx.replica, database, disable_binlog=True)
        ctx.admin.restore(ctx.replica, snapshot.path, database=database, disable_binlog=True)
        return {"restored_snapshot": snapshot_id}


class ResumeReplication(Step):
    name = "resuming-replication"

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        ctx.admin.start_replica(ctx.replica)
        return {"resumed": True}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        # replication stays running after rollback; PauseReplication's
        # compensation restarts it if this step never ran
        pass


REFRESH_STEPS = [
    PauseReplication.name,
    RecreateDatabase.name,
    ImportDump.name,
    SnapshotDatabase.name,
    RestoreDatabase.name,
    ResumeReplication.name,
    VerifyStreaming.name,
]


# add-database / remove-database steps

class CreateDatabaseOnPrimary(Step):
    name = "creating-database"

    def already_done(self, ctx: StepContext) -> bool:
        return ctx.admin.database_exists(ctx.primary, ctx.operation.params["database"])

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        database = ctx.operation.params["database"]
        ctx.checkpoint(self.name, created=database)
        ctx.admin.create_database(ctx.primary, database)
        return {"created": database}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        database = record.data.get("created")
        if database:
            ctx.admin.drop_database(ctx.primary, database)


class DropDatabaseOnPrimary(Step):
    name = "dropping-database"

    def already_done(self, ctx: StepContext) -> bool:
        return not ctx.admin.database_exists(ctx.primary, ctx.operation.params["database"])

    def run(self, ctx: StepContext) -> Dict[str, Any]:
        database = ctx.operation.params["database"]
        ctx.admin.drop_database(ctx.primary, database)
        return {"dropped": database}

    def compensate(self, ctx: StepContext, record: StepRecord) -> None:
        logger.warning(f"Cannot restore dropped database {record.data.get('dropped')}")


class VerifyDatabasePresent(Step):
    name = "verifying-replica"

    def run(self, ctx: StepContext) -> Optional[Dict[str, Any]]:
        _wait_for_database(ctx, ctx.operation.params["database"], present=True)
        return None


class VerifyDatabaseAbsent(Step):
    name = "verifying-replica"

    def run(self, ctx: StepContext) -> Optional[Dict[str, Any]]:
        _wait_for_database(ctx, ctx.operation.params["database"], present=False)
        return None


@dataclass
class RecoveryResult:
    link: ReplicationLink
    attempts: int
    restarted_replication: bool
    topology: TopologyState


class LifecycleController(OperationService):
    """Coordinates restart recovery and refresh/add/remove workflows."""

    kinds = (REFRESH, ADD_DATABASE, REMOVE_DATABASE)

    def steps_for(self, operation: Operation) -> List[Step]:
        if operation.kind == REFRESH:
            return [
                PauseReplication(), RecreateDatabase(), ImportDump(), SnapshotDatabase(),
                RestoreDatabase(), ResumeReplication(), VerifyStreaming(),
            ]
        if operation.kind == ADD_DATABASE:
            return [CreateDatabaseOnPrimary(), VerifyDatabasePresent()]
        if operation.kind == REMOVE_DATABASE:
            return [DropDatabaseOnPrimary(), VerifyDatabaseAbsent()]
        raise InvalidArgument(f"Unknown operation kind: {operation.kind}")

    def recover(self, topology: TopologyState) -> RecoveryResult:
        """
        Wait for the replica link to stream again after a restart.

        Polls with the configured exponential backoff. Unreachable attempts
        count against the budget. A link that came back stopped without an
        error is started once.

        Raises:
            InvalidArgument: the replica has no replication link at all
            RecoveryTimeout: retry budget exhausted
        """
        replica = self.config.replica
        attempts = 0
        restarted = False

        def check() -> ReplicationLink:
            nonlocal attempts, restarted
            attempts += 1
            link = self.reader.read_status(replica)
            if link is None:
                raise InvalidArgument(f"{replica.name} has no replication link; provision it first")
            if link.state == LinkState.DISCONNECTED and not restarted:
                logger.info(f"{replica.name} link is stopped after restart, starting replication")
                self.admin.start_replica(replica)
                restarted = True
            return link

        with self.lock("recover"):
            try:
                link = poll_until(
                    check,
                    lambda l: l.is_streaming,
                    Backoff.from_policy(self.config.recovery),
                    retry_on=(NodeConnectionError, ParseError),
                    sleep=self.sleep,
                    clock=self.clock,
                    label=f"{replica.name} to recover",
                )
            except PollExhausted as e:
                last = e.last_value
                detail = f"last state {last.state.value}" if last is not None else str(e.last_error)
                if last is not None and last.last_error:
                    detail += f" ({last.last_error})"
                raise RecoveryTimeout(
                    f"{replica.name} did not resume streaming after {e.attempts} attempts: {detail}"
                ) from None

        logger.info(f"{replica.name} streaming again after {attempts} attempts")
        return RecoveryResult(
            link=link, attempts=attempts, restarted_replication=restarted,
            topology=self.reader.observe(),
        )

    def refresh(self, topology: TopologyState, database: str, dump: Path) -> OperationResult:
        """
        Replace a database on the primary from an external dump and re-seed
        the replica with it.

        An unfinished refresh of the same database is resumed where its log
        stopped, so the destructive drop/recreate runs at most once.

        Raises:
            InvalidArgument: bad database name, missing dump file, or the
                replica has no replication link
            OperationInProgress: another operation holds the replica
            StepFailed: a step failed
        """
        validate_database_name(database)
        dump = Path(dump).resolve()
        with self.lock(REFRESH):
            if self.reader.read_status(self.config.replica) is None:
                raise InvalidArgument(f"{self.target} has no replication link; provision it first")
            params = {"database": database, "dump": str(dump)}
            pending = self.log.latest(target=self.target, kind=REFRESH, resumable_only=True)
            imported = (
                pending is not None and pending.params == params
                and pending.step(ImportDump.name).done
            )
            if not imported and not dump.exists():
                raise InvalidArgument(f"Dump file not found: {dump}")

            operation = self.start_or_resume(REFRESH, REFRESH_STEPS, **params)
            if operation.step(RecreateDatabase.name).done:
                logger.info(f"{database} was already recreated by {operation.operation_id}; not dropping again")
            return self.execute(operation, topology)

    def add_database(self, topology: TopologyState, database: str) -> OperationResult:
        """Create a database on the primary and wait for it on the replica."""
        validate_database_name(database)
        with self.lock(ADD_DATABASE):
            operation = self.start_or_resume(
                ADD_DATABASE, [CreateDatabaseOnPrimary.name, VerifyDatabasePresent.name],
                database=database,
            )
            return self.execute(operation, topology, from_start=True)

    def remove_database(self, topology: TopologyState, database: str) -> OperationResult:
        """Drop a database on the primary and wait for it to leave the replica."""
        validate_database_name(database)
        with self.lock(REMOVE_DATABASE):
            operation = self.start_or_resume(
                REMOVE_DATABASE, [DropDatabaseOnPrimary.name, VerifyDatabaseAbsent.name],
                database=database,
            )
            return self.execute(operation, topology, from_start=True)
