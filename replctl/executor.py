#!/usr/bin/env python3
"""
Command Executor for replctl.

Runs administrative commands against a MySQL node, either through
``docker exec`` into the node's container or with the local client
binaries over TCP. Every call is synchronous and never retried here;
retry policy belongs to the caller.
"""

import os
import re
import subprocess
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .config import NodeConfig, NodeType, TopologyConfig
from .errors import AuthError, CommandError, NodeConnectionError, ReplctlError

logger = logging.getLogger(__name__)

# mysql client error codes
AUTH_ERROR_CODES = {1044, 1045, 1698}
CONNECTION_ERROR_CODES = {2002, 2003, 2005, 2006, 2013}

DOCKER_UNREACHABLE_MARKERS = (
    "No such container",
    "is not running",
    "Cannot connect to the Docker daemon",
)

_ERROR_CODE = re.compile(r"(?:ERROR|Got error:)\s+(\d{4})")

# password literals of CREATE USER and CHANGE REPLICATION SOURCE
_SECRET = re.compile(
    r"((?:IDENTIFIED(?:\s+WITH\s+\S+)?\s+BY|_PASSWORD\s*=)\s*)'(?:[^'\\]|\\.|'')*'",
    re.IGNORECASE,
)


def redact(sql: str) -> str:
    """Mask password literals in a statement before it is logged."""
    return _SECRET.sub(r"\1'****'", sql)


@dataclass(frozen=True)
class SqlCommand:
    """One or more SQL statements run through the ``mysql`` client."""
    sql: str
    vertical: bool = False  # \G style "Field: value" output
    raw: bool = True        # tab separated, no column headers
    disable_binlog: bool = False


@dataclass(frozen=True)
class DumpCommand:
    """Export databases with ``mysqldump`` into a file."""
    databases: Tuple[str, ...]
    output: Path
    gtid_purged: bool = True  # record GTID_PURGED, needed to seed a fresh replica
    single_schema: bool = False


@dataclass(frozen=True)
class RestoreCommand:
    """Load a dump file through the ``mysql`` client."""
    input: Path
    database: Optional[str] = None
    disable_binlog: bool = False


Command = Union[SqlCommand, DumpCommand, RestoreCommand]


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


class CommandExecutor:
    """
    Executes administrative commands on a node.

    Failures are classified into NodeConnectionError (unreachable),
    AuthError (credentials rejected) and CommandError (anything else).
    """

    def __init__(self, config: TopologyConfig):
        """
        Initialize the Command Executor.

        Args:
            config: Topology configuration (binary paths and timeouts)
        """
        self.config = config

    def _client_argv(self, node: NodeConfig, binary: str, local_path: str) -> List[str]:
        """Base argv for a client binary, reaching the node the configured way."""
        if node.node_type == NodeType.DOCKER_CONTAINER:
            # -e without a value forwards MYSQL_PWD from our environment
            return [
                self.config.docker_path, "exec", "-i",
                "-e", "MYSQL_PWD",
                node.container_name,
                binary,
                "-u", node.user,
            ]
        return [
            local_path,
            "-h", node.host,
            "-P", str(node.port),
            "--protocol=TCP",
            "-u", node.user,
        ]

    def build_argv(self, node: NodeConfig, command: Command) -> List[str]:
        """
        Build the argv that runs a command on a node.

        Args:
            node: Target node
            command: SqlCommand, DumpCommand or RestoreCommand

        Returns:
            The argument vector
        """
        if isinstance(command, DumpCommand):
            argv = self._client_argv(node, "mysqldump", self.config.mysqldump_path)
            argv.extend([
                "--single-transaction",
                "--routines",
                "--triggers",
                "--events",
                "--set-gtid-purged=ON" if command.gtid_purged else "--set-gtid-purged=OFF",
            ])
            if command.single_schema:
                # no CREATE DATABASE/USE, so the dump loads into any schema
                argv.append(command.databases[0])
            else:
                argv.append("--databases")
                argv.extend(command.databases)
            return argv

        argv = self._client_argv(node, "mysql", self.config.mysql_client_path)
        if command.disable_binlog:
            argv.append("--init-command=SET SESSION sql_log_bin=0")

        if isinstance(command, RestoreCommand):
            if command.database:
                argv.append(command.database)
            return argv

        if command.vertical:
            argv.append("-E")
        elif command.raw:
            argv.extend(["-N", "-B"])
        argv.extend(["-e", command.sql])
        return argv

    def _timeout_for(self, command: Command) -> float:
        if isinstance(command, (DumpCommand, RestoreCommand)):
            return self.config.dump_timeout
        return self.config.command_timeout

    def execute(self, node: NodeConfig, command: Command) -> CommandResult:
        """
        Run a command on a node.

        Args:
            node: Target node
            command: Command to run

        Returns:
            CommandResult with exit code, stdout and stderr

        Raises:
            NodeConnectionError: node unreachable or command timed out
            AuthError: credentials rejected
            CommandError: non-zero exit for any other reason
        """
        argv = self.build_argv(node, command)
        env = dict(os.environ, MYSQL_PWD=node.password)
        timeout = self._timeout_for(command)

        if isinstance(command, SqlCommand):
            logger.debug(f"[{node.name}] SQL: {redact(command.sql)}")
        else:
            logger.debug(f"[{node.name}] exec: {' '.join(argv)}")

        try:
            result = self._invoke(node, command, argv, timeout, env)
            if result.returncode != 0:
                self._raise_for_failure(node, result.returncode, result.stderr or "", argv[0])
        except ReplctlError:
            if isinstance(command, DumpCommand):
                # a truncated dump must not be mistaken for a snapshot
                command.output.unlink(missing_ok=True)
            raise

        return CommandResult(exit_code=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")

    def _invoke(
        self, node: NodeConfig, command: Command, argv: List[str], timeout: float, env: dict
    ) -> subprocess.CompletedProcess:
        if isinstance(command, DumpCommand):
            command.output.parent.mkdir(parents=True, exist_ok=True)
            with open(command.output, "w") as out:
                return self._run(node, argv, timeout, stdout=out, stderr=subprocess.PIPE, env=env)
        if isinstance(command, RestoreCommand):
            with open(command.input) as src:
                return self._run(node, argv, timeout, stdin=src, capture_output=True, env=env)
        return self._run(node, argv, timeout, capture_output=True, env=env)

    def _run(self, node: NodeConfig, argv: List[str], timeout: float, **kwargs) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(argv, text=True, timeout=timeout, **kwargs)
        except subprocess.TimeoutExpired:
            raise NodeConnectionError(node.name, f"command timed out after {timeout:g}s")
        except FileNotFoundError as e:
            raise CommandError(node.name, 127, f"client binary not found: {e.filename}", argv[0])

    def _raise_for_failure(self, node: NodeConfig, exit_code: int, stderr: str, binary: str) -> None:
        """Classify a failed invocation and raise the matching error."""
        match = _ERROR_CODE.search(stderr)
        code = int(match.group(1)) if match else None
        message = stderr.strip()

        if code in AUTH_ERROR_CODES:
            raise AuthError(node.name, message)
        if code in CONNECTION_ERROR_CODES:
            raise NodeConnectionError(node.name, message)
        if node.node_type == NodeType.DOCKER_CONTAINER and any(
            marker in stderr for marker in DOCKER_UNREACHABLE_MARKERS
        ):
            raise NodeConnectionError(node.name, message)

        logger.debug(f"[{node.name}] {binary} exited {exit_code}: {message}")
        raise CommandError(node.name, exit_code, stderr, binary)
