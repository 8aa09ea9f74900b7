#!/usr/bin/env python3
"""
Runbook interface for replctl.

Wires the command executor, topology reader, orchestrator and lifecycle
controller for one primary/replica pair. This is what the CLI drives, and
what a script should use to automate the runbook.
"""

import time
import logging
from pathlib import Path
from typing import Callable, List, Optional

from .admin import MySQLAdmin
from .compose import write_compose
from .config import TopologyConfig, create_default_config
from .errors import InvalidArgument
from .executor import CommandExecutor
from .lifecycle import LifecycleController, RecoveryResult
from .models import Operation, OperationState, Snapshot, TopologyState
from .operations import OperationResult
from .orchestrator import ProvisioningOrchestrator
from .state import CancelToken, OperationLock, OperationLog, SnapshotStore
from .status import TopologyReader

logger = logging.getLogger(__name__)


class Runbook:
    """
    Main interface for a managed primary/replica pair.

    Usage:
        runbook = Runbook.load(Path("config/topology.json"))
        result = runbook.provision()
        print(result.after.link.state)
    """

    def __init__(
        self,
        config: TopologyConfig,
        admin: Optional[MySQLAdmin] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the runbook.

        Args:
            config: Validated topology configuration
            admin: Administrative interface (built from the config by default)
            sleep: Sleep function used by every polling loop
            clock: Monotonic clock used by every polling loop
        """
        config.validate()
        self.config = config
        self.admin = admin or MySQLAdmin(config, CommandExecutor(config))
        self.reader = TopologyReader(config, self.admin)
        self.log = OperationLog(config.state_dir)
        self.snapshots = SnapshotStore(config.snapshot_dir)

        services = (config, self.admin, self.reader, self.log, self.snapshots)
        self.orchestrator = ProvisioningOrchestrator(*services, sleep=sleep, clock=clock)
        self.lifecycle = LifecycleController(*services, sleep=sleep, clock=clock)

    @classmethod
    def load(cls, config_path: Path, state_dir: Optional[Path] = None, **kwargs) -> "Runbook":
        """
        Load a runbook from a saved configuration.

        Args:
            config_path: Path to topology.json
            state_dir: Override of the configured state directory
        """
        config = TopologyConfig.load(config_path)
        if state_dir is not None:
            config.state_dir = Path(state_dir)
        return cls(config, **kwargs)

    @property
    def replica_name(self) -> str:
        return self.config.replica.name

    def write_compose(self, path: Optional[Path] = None) -> Path:
        return write_compose(self.config, path)

    # Reads (no lock)

    def status(self) -> TopologyState:
        """Observe both nodes."""
        return self.reader.observe()

    def operations(self) -> List[Operation]:
        return self.log.list(target=self.replica_name)

    def list_snapshots(self) -> List[Snapshot]:
        return self.snapshots.list()

    def running_operation(self) -> Optional[dict]:
        """Holder of the replica's lock, if an operation is running."""
        return OperationLock(self.config.state_dir, self.replica_name).holder()

    # Operations

    def provision(self) -> OperationResult:
        return self.orchestrator.provision(self.status())

    def verify(self) -> OperationResult:
        return self.orchestrator.verify(self.status())

    def recover(self) -> RecoveryResult:
        return self.lifecycle.recover(self.status())

    def refresh(self, database: str, dump: Path) -> OperationResult:
        return self.lifecycle.refresh(self.status(), database, dump)

    def add_database(self, name: str) -> OperationResult:
        return self.lifecycle.add_database(self.status(), name)

    def remove_database(self, name: str) -> OperationResult:
        return self.lifecycle.remove_database(self.status(), name)

    def rollback(self, operation_id: Optional[str] = None) -> OperationResult:
        """
        Roll back an operation, the latest one on the replica by default.

        Rolling back a provision decommissions the replica: its link is
        reset and the credentials the provision created are dropped.

        Raises:
            InvalidArgument: nothing to roll back, or unknown operation
        """
        if operation_id:
            operation = self.log.load(operation_id)
        else:
            operation = next(
                (op for op in reversed(self.operations()) if op.state != OperationState.ROLLED_BACK),
                None,
            )
            if operation is None:
                raise InvalidArgument(f"No operation to roll back on {self.replica_name}")

        for service in (self.orchestrator, self.lifecycle):
            if operation.kind in service.kinds:
                return service.rollback(self.status(), operation.operation_id)
        raise InvalidArgument(f"Cannot roll back a {operation.kind} operation")

    def cancel(self) -> Optional[dict]:
        """
        Ask the running operation to stop before its next step.

        Returns:
            The lock holder that was asked to stop, or None if nothing runs
        """
        holder = self.running_operation()
        if holder is None:
            return None
        CancelToken(self.config.state_dir, self.replica_name).request()
        logger.info(f"Cancellation requested for {holder.get('kind')} (pid {holder.get('pid')})")
        return holder

    def purge_snapshot(self, snapshot_id: str) -> None:
        with OperationLock(self.config.state_dir, self.replica_name, "purge-snapshot"):
            self.snapshots.purge(snapshot_id)


def create_runbook(base_dir: Optional[Path] = None, **kwargs) -> Runbook:
    """
    Create and save a default configuration, and return its runbook.

    Args:
        base_dir: Directory for config/, state/ and docker-compose.yml
        **kwargs: Passed to create_default_config
    """
    config = create_default_config(base_dir=base_dir, **kwargs)
    config.save()
    return Runbook(config)


def load_runbook(config_path: Optional[Path] = None, **kwargs) -> Runbook:
    """
    Load an existing runbook.

    Args:
        config_path: Path to configuration file (defaults to ./config/topology.json)
    """
    if config_path is None:
        config_path = Path.cwd() / "config" / "topology.json"
    return Runbook.load(config_path, **kwargs)
