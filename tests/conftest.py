"""Shared fixtures: an in-memory MySQL pair behind the MySQLAdmin interface."""
import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from replctl.admin import SYSTEM_DATABASES
from replctl.config import NodeConfig, NodeType, create_default_config
from replctl.errors import CommandError, NodeConnectionError
from replctl.runbook import Runbook

PRIMARY_UUID = "3e11fa47-71ca-11e1-9e33-c80aa9429562"

MUTATING = {
    "create_replication_user", "create_admin_storage", "drop_user", "create_database", "drop_database",
    "reset_gtids", "dump", "dump_schema", "restore", "change_source", "point_source",
    "start_replica", "stop_replica", "reset_replica_all",
}


class FakeServer:
    """State of one simulated mysqld."""

    def __init__(self, name: str):
        self.name = name
        self.users = set()
        self.databases: Dict[str, str] = {}
        self.read_only = False
        # primary side: binlogged events, position == len(binlog)
        self.binlog: List[tuple] = []
        # replica side
        self.source: Optional[dict] = None
        self.running = False
        self.applied = 0


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAdmin:
    """
    Stands in for MySQLAdmin. Replication is simulated: a started replica
    whose source is reachable and accepts the credentials applies the
    primary's binlog events whenever its status is read.
    """

    def __init__(self, config):
        self.config = config
        self.servers = {
            config.primary.name: FakeServer(config.primary.name),
            config.replica.name: FakeServer(config.replica.name),
        }
        self.servers[config.replica.name].read_only = True
        self.calls: List[tuple] = []
        self.down: Dict[str, int] = {}          # calls that fail as unreachable; -1 = forever
        self.failures: Dict[str, Exception] = {}  # method -> error raised on every call
        self.fail_once: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable] = {}     # method -> called after it succeeds
        self.link_script: List[dict] = []        # status overrides consumed one per read
        self.reject_replication = False

    # helpers for tests

    @property
    def primary(self) -> FakeServer:
        return self.servers[self.config.primary.name]

    @property
    def replica(self) -> FakeServer:
        return self.servers[self.config.replica.name]

    def seed_primary(self, *databases: str) -> None:
        for name in databases:
            self.primary.databases[name] = f"rows of {name}"
            self.primary.binlog.append(("create", name))

    def mutations(self, method: Optional[str] = None, node: Optional[str] = None) -> List[tuple]:
        return [
            c for c in self.calls
            if c[0] in MUTATING
            and (method is None or c[0] == method)
            and (node is None or c[1] == node)
        ]

    def arm_directly(self) -> None:
        """Put the pair in a provisioned, streaming state without an operation."""
        self.primary.users.add(self.config.replication_user)
        self.replica.source = {"host": self.config.primary.internal_host, "port": self.config.primary.internal_port}
        self.replica.running = True
        self.replica.applied = len(self.primary.binlog)
        self.replica.databases.update(self.primary.databases)

    def add_admin_storage(self) -> None:
        """Give the primary phpMyAdmin's control user and storage database."""
        ui = self.config.admin_ui
        self.primary.users.add(ui.control_user)
        self.primary.databases.setdefault(ui.pmadb, "")

    def restart(self, node: str, unreachable_calls: int = 0, keep_running: bool = True) -> None:
        self.down[node] = unreachable_calls
        if not keep_running:
            self.servers[node].running = False

    # plumbing

    def _enter(self, method: str, node: NodeConfig, *args) -> FakeServer:
        self.calls.append((method, node.name) + args)
        remaining = self.down.get(node.name, 0)
        if remaining:
            if remaining > 0:
                self.down[node.name] = remaining - 1
            raise NodeConnectionError(node.name, "ERROR 2003 (HY000): Can't connect to MySQL server")
        if method in self.fail_once:
            raise self.fail_once.pop(method)
        if method in self.failures:
            raise self.failures[method]
        return self.servers[node.name]

    def _after(self, method: str, *args) -> None:
        hook = self.hooks.get(method)
        if hook is not None:
            hook(*args)

    def _log(self, server: FakeServer, event: tuple, disable_binlog: bool) -> None:
        if not disable_binlog and server is self.primary:
            server.binlog.append(event)

    def _position(self, count: int) -> str:
        return f"{PRIMARY_UUID}:1-{count}" if count else ""

    def _link_up(self) -> bool:
        source_ok = self.down.get(self.config.primary.name, 0) == 0
        return (
            self.replica.running
            and source_ok
            and not self.reject_replication
            and self.config.replication_user in self.primary.users
        )

    def _replicate(self) -> None:
        for op, name in self.primary.binlog[self.replica.applied:]:
            if op == "create":
                self.replica.databases.setdefault(name, "")
            elif op == "drop":
                self.replica.databases.pop(name, None)
            elif op == "user":
                self.replica.users.add(name)
            elif op == "drop-user":
                self.replica.users.discard(name)
        self.replica.applied = len(self.primary.binlog)

    # users

    def user_exists(self, node, user, host="%"):
        return user in self._enter("user_exists", node, user).users

    def create_replication_user(self, node, user, password, host="%"):
        server = self._enter("create_replication_user", node, user)
        server.users.add(user)
        self._log(server, ("user", user), False)
        self._after("create_replication_user", node)

    def drop_user(self, node, user, host="%"):
        server = self._enter("drop_user", node, user)
        server.users.discard(user)
        self._log(server, ("drop-user", user), False)

    def create_admin_storage(self, node, user, password, database, host="%"):
        server = self._enter("create_admin_storage", node, user, database)
        if database not in server.databases:
            server.databases[database] = ""
            self._log(server, ("create", database), False)
        server.users.add(user)
        self._log(server, ("user", user), False)
        self._after("create_admin_storage", node)

    # databases

    def list_databases(self, node, include_system=False):
        server = self._enter("list_databases", node)
        names = sorted(server.databases)
        if include_system:
            return sorted(SYSTEM_DATABASES) + names
        return names

    def database_exists(self, node, name):
        server = self._enter("database_exists", node, name)
        if server is self.replica and self._link_up():
            self._replicate()
        return name in server.databases

    def create_database(self, node, name, disable_binlog=False):
        server = self._enter("create_database", node, name, disable_binlog)
        server.databases.setdefault(name, "")
        self._log(server, ("create", name), disable_binlog)
        self._after("create_database", node, name)

    def drop_database(self, node, name, disable_binlog=False):
        server = self._enter("drop_database", node, name, disable_binlog)
        server.databases.pop(name, None)
        self._log(server, ("drop", name), disable_binlog)
        self._after("drop_database", node, name)

    # server state

    def gtid_executed(self, node):
        server = self._enter("gtid_executed", node)
        count = len(server.binlog) if server is self.primary else server.applied
        return self._position(count)

    def is_read_only(self, node):
        return self._enter("is_read_only", node).read_only

    def reset_gtids(self, node):
        server = self._enter("reset_gtids", node)
        server.applied = 0

    # dump / restore

    def dump(self, node, databases, output: Path):
        server = self._enter("dump", node, tuple(databases))
        position = len(server.binlog)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps({
            "databases": {name: server.databases[name] for name in databases},
            "gtid_purged": position,
        }))
        return self._position(position)

    def dump_schema(self, node, database, output: Path):
        server = self._enter("dump_schema", node, database)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(server.databases[database])
        return self._position(len(server.binlog))

    def restore(self, node, source: Path, database=None, disable_binlog=False):
        server = self._enter("restore", node, Path(source).name, database, disable_binlog)
        text = Path(source).read_text()
        if database is not None:
            if database not in server.databases:
                raise CommandError(node.name, 1, f"ERROR 1049 (42000): Unknown database '{database}'", "mysql")
            server.databases[database] = text
        else:
            dump = json.loads(text)
            server.databases.update(dump["databases"])
            server.applied = dump["gtid_purged"]
        self._after("restore", node)

    # replication

    def change_source(self, replica, primary, user, password):
        server = self._enter("change_source", replica, primary.internal_host)
        server.source = {"host": primary.internal_host, "port": primary.internal_port}

    def point_source(self, replica, host, port, user=None, password=None):
        server = self._enter("point_source", replica, host, port)
        server.source = {"host": host, "port": port}

    def start_replica(self, node):
        server = self._enter("start_replica", node)
        if server.source is None:
            raise CommandError(node.name, 1, "ERROR 3081 (HY000): Cannot start replica", "mysql")
        server.running = True

    def stop_replica(self, node):
        server = self._enter("stop_replica", node)
        server.running = False
        self._after("stop_replica", node)

    def reset_replica_all(self, node):
        server = self._enter("reset_replica_all", node)
        server.running = False
        server.source = None

    def replica_status(self, node):
        server = self._enter("replica_status", node)
        if server.source is None:
            return ""

        io, sql, error = "No", "No", ""
        if self.link_script:
            override = self.link_script.pop(0)
            io, sql, error = override["io"], override["sql"], override.get("error", "")
        elif self._link_up():
            self._replicate()
            io, sql = "Yes", "Yes"
        elif server.running:
            io, sql = "Connecting", "Yes"
            error = (
                f"error connecting to source '{self.config.replication_user}@"
                f"{server.source['host']}:{server.source['port']}' - retry-time: 60 retries: 1"
            )

        return render_status(
            source_host=server.source["host"],
            source_port=server.source["port"],
            io=io,
            sql=sql,
            io_error=error,
            executed=self._position(server.applied),
        )


def render_status(source_host="mysql-primary", source_port=3306, io="Yes", sql="Yes",
                  io_error="", sql_error="", executed="", lag="0"):
    """Vertical SHOW REPLICA STATUS output as the mysql client prints it."""
    return (
        "*************************** 1. row ***************************\n"
        "             Replica_IO_State: Waiting for source to send event\n"
        f"                  Source_Host: {source_host}\n"
        "                  Source_User: repl\n"
        f"                  Source_Port: {source_port}\n"
        "                Connect_Retry: 60\n"
        "              Source_Log_File: mysql-bin.000003\n"
        "          Read_Source_Log_Pos: 1575\n"
        f"           Replica_IO_Running: {io}\n"
        f"          Replica_SQL_Running: {sql}\n"
        "                   Last_Errno: 0\n"
        f"                   Last_Error: {sql_error}\n"
        f"        Seconds_Behind_Source: {lag if io == 'Yes' else 'NULL'}\n"
        f"                Last_IO_Error: {io_error}\n"
        f"               Last_SQL_Error: {sql_error}\n"
        f"           Executed_Gtid_Set: {executed}\n"
        "                Auto_Position: 1\n"
    )


@pytest.fixture
def config(tmp_path):
    """Default docker topology rooted in a temporary directory."""
    config = create_default_config(base_dir=tmp_path)
    config.verify_timeout = 6.0
    config.verify_interval = 2.0
    return config


@pytest.fixture
def tcp_node():
    return NodeConfig(name="db1", role="primary", node_type=NodeType.TCP,
                      host="10.0.0.5", port=3310, password="s3cret")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_admin(config):
    admin = FakeAdmin(config)
    admin.seed_primary("app")
    return admin


@pytest.fixture
def runbook(config, fake_admin, clock):
    return Runbook(config, admin=fake_admin, sleep=clock.sleep, clock=clock)
