#!/usr/bin/env python3
"""
Administrative command interface for replctl.

The runbook's manual steps (create the replication user, dump, restore,
CHANGE REPLICATION SOURCE, start/stop replica, status checks) expressed as
methods on top of the Command Executor.
"""

import re
import logging
from pathlib import Path
from typing import Optional, List, Iterable

from .config import NodeConfig, TopologyConfig
from .executor import CommandExecutor, SqlCommand, DumpCommand, RestoreCommand

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = frozenset({"mysql", "sys", "information_schema", "performance_schema"})

_COMMENT = re.compile(r"/\*.*?\*/")


def quote_ident(name: str) -> str:
    """Quote a schema identifier with backticks."""
    return "`" + name.replace("`", "``") + "`"


def quote_str(value: str) -> str:
    """Quote a string literal for MySQL."""
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def parse_gtid_purged(path: Path, max_lines: int = 200) -> str:
    """
    Extract the GTID set recorded by ``mysqldump --set-gtid-purged=ON``.

    The statement looks like
    ``SET @@GLOBAL.GTID_PURGED=/*!80000 '+'*/ 'uuid:1-5';`` and may wrap
    over several lines when more than one server UUID is present.

    Returns:
        The GTID set, or an empty string when the dump has none
    """
    parts = []
    collecting = False
    with open(path) as f:
        for lineno, line in enumerate(f):
            if not collecting:
                if lineno >= max_lines:
                    break
                idx = line.find("GTID_PURGED=")
                if idx < 0:
                    continue
                rest = _COMMENT.sub("", line[idx + len("GTID_PURGED="):]).strip()
                collecting = True
            else:
                rest = line.strip()
            parts.append(rest)
            if rest.endswith(";"):
                break

    text = "".join(parts).strip().rstrip(";").strip()
    return text.strip("'")


class MySQLAdmin:
    """
    Documented administrative commands of a MySQL node.

    Statements are chosen for the configured server version: the
    REPLICA/SOURCE vocabulary from 8.0.23, the legacy SLAVE/MASTER one
    before that.
    """

    def __init__(self, config: TopologyConfig, executor: Optional[CommandExecutor] = None):
        self.config = config
        self.executor = executor or CommandExecutor(config)

    @property
    def legacy_syntax(self) -> bool:
        return self.config.version_tuple() < (8, 0, 23)

    def _sql(self, node: NodeConfig, sql: str, **kwargs) -> str:
        return self.executor.execute(node, SqlCommand(sql, **kwargs)).stdout

    # Users

    def user_exists(self, node: NodeConfig, user: str, host: str = "%") -> bool:
        out = self._sql(
            node,
            f"SELECT COUNT(*) FROM mysql.user WHERE User={quote_str(user)} AND Host={quote_str(host)};",
        )
        return int(out.strip() or 0) > 0

    def create_replication_user(self, node: NodeConfig, user: str, password: str, host: str = "%") -> None:
        account = f"{quote_str(user)}@{quote_str(host)}"
        logger.info(f"Creating replication user {user}@{host} on {node.name}")
        self._sql(
            node,
            f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {quote_str(password)}; "
            f"GRANT REPLICATION SLAVE ON *.* TO {account};",
        )

    def drop_user(self, node: NodeConfig, user: str, host: str = "%") -> None:
        logger.info(f"Dropping user {user}@{host} on {node.name}")
        self._sql(node, f"DROP USER IF EXISTS {quote_str(user)}@{quote_str(host)};")

    def create_admin_storage(
        self, node: NodeConfig, user: str, password: str, database: str, host: str = "%"
    ) -> None:
        """
        Create phpMyAdmin's control user and its configuration-storage
        database. phpMyAdmin creates the storage tables itself on first use.
        """
        account = f"{quote_str(user)}@{quote_str(host)}"
        logger.info(f"Creating admin UI storage {database} and control user {user}@{host} on {node.name}")
        self._sql(
            node,
            f"CREATE DATABASE IF NOT EXISTS {quote_ident(database)}; "
            f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {quote_str(password)}; "
            f"GRANT ALL PRIVILEGES ON {quote_ident(database)}.* TO {account};",
        )

    # Databases

    def list_databases(self, node: NodeConfig, include_system: bool = False) -> List[str]:
        out = self._sql(node, "SHOW DATABASES;")
        names = [line.strip() for line in out.splitlines() if line.strip()]
        if include_system:
            return names
        return [n for n in names if n not in SYSTEM_DATABASES]

    def database_exists(self, node: NodeConfig, name: str) -> bool:
        return name in self.list_databases(node, include_system=True)

    def create_database(self, node: NodeConfig, name: str, disable_binlog: bool = False) -> None:
        self._sql(node, f"CREATE DATABASE IF NOT EXISTS {quote_ident(name)};", disable_binlog=disable_binlog)

    def drop_database(self, node: NodeConfig, name: str, disable_binlog: bool = False) -> None:
        self._sql(node, f"DROP DATABASE IF EXISTS {quote_ident(name)};", disable_binlog=disable_binlog)

    # Server state

    def gtid_executed(self, node: NodeConfig) -> str:
        out = self._sql(node, "SELECT @@GLOBAL.gtid_executed;")
        # batch mode escapes the newlines of a wrapped GTID set
        return out.replace("\\n", "").replace("\n", "").strip()

    def is_read_only(self, node: NodeConfig) -> bool:
        out = self._sql(node, "SELECT @@GLOBAL.read_only;")
        return out.strip() == "1"

    def reset_gtids(self, node: NodeConfig) -> None:
        if self.config.version_tuple() >= (8, 4):
            self._sql(node, "RESET BINARY LOGS AND GTIDS;")
        else:
            self._sql(node, "RESET MASTER;")

    # Dump / restore

    def dump(self, node: NodeConfig, databases: Iterable[str], output: Path) -> str:
        """
        Dump whole databases from a node, recording GTID_PURGED.

        Args:
            node: Node to export from
            databases: Databases to include
            output: Destination file

        Returns:
            Position token (GTID set) the dump corresponds to
        """
        databases = tuple(databases)
        if not databases:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text("-- no user databases on source\n")
            return self.gtid_executed(node)

        logger.info(f"Dumping {', '.join(databases)} from {node.name} to {output}")
        self.executor.execute(node, DumpCommand(databases=databases, output=output))
        return parse_gtid_purged(output) or self.gtid_executed(node)

    def dump_schema(self, node: NodeConfig, database: str, output: Path) -> str:
        """
        Dump the contents of one database without GTID or schema-selection
        statements, so it can be loaded into an existing replica.

        Returns:
            The node's executed GTID set at dump time
        """
        position = self.gtid_executed(node)
        logger.info(f"Dumping contents of {database} from {node.name} to {output}")
        self.executor.execute(node, DumpCommand(
            databases=(database,), output=output, gtid_purged=False, single_schema=True,
        ))
        return position

    def restore(
        self,
        node: NodeConfig,
        source: Path,
        database: Optional[str] = None,
        disable_binlog: bool = False,
    ) -> None:
        logger.info(f"Restoring {source} onto {node.name}" + (f" ({database})" if database else ""))
        self.executor.execute(
            node, RestoreCommand(input=source, database=database, disable_binlog=disable_binlog)
        )

    # Replication

    def change_source(self, replica: NodeConfig, primary: NodeConfig, user: str, password: str) -> None:
        self.point_source(replica, primary.internal_host, primary.internal_port, user, password)

    def point_source(
        self,
        replica: NodeConfig,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        """
        CHANGE REPLICATION SOURCE to host:port with GTID auto-positioning.

        Credentials left as None keep the values the replica already has.
        """
        prefix = "MASTER" if self.legacy_syntax else "SOURCE"
        options = [f"{prefix}_HOST={quote_str(host)}", f"{prefix}_PORT={int(port)}"]
        if user is not None:
            options.append(f"{prefix}_USER={quote_str(user)}")
        if password is not None:
            options.append(f"{prefix}_PASSWORD={quote_str(password)}")
        options += [f"{prefix}_AUTO_POSITION=1", f"GET_{prefix}_PUBLIC_KEY=1"]

        statement = "CHANGE MASTER TO" if self.legacy_syntax else "CHANGE REPLICATION SOURCE TO"
        logger.info(f"Pointing {replica.name} at {host}:{port}")
        self._sql(replica, f"{statement} {', '.join(options)};")

    def start_replica(self, node: NodeConfig) -> None:
        self._sql(node, "START SLAVE;" if self.legacy_syntax else "START REPLICA;")

    def stop_replica(self, node: NodeConfig) -> None:
        self._sql(node, "STOP SLAVE;" if self.legacy_syntax else "STOP REPLICA;")

    def reset_replica_all(self, node: NodeConfig) -> None:
        if self.legacy_syntax:
            self._sql(node, "STOP SLAVE; RESET SLAVE ALL;")
        else:
            self._sql(node, "STOP REPLICA; RESET REPLICA ALL;")

    def replica_status(self, node: NodeConfig) -> str:
        """Raw vertical output of SHOW REPLICA STATUS (empty when no link)."""
        sql = "SHOW SLAVE STATUS;" if self.legacy_syntax else "SHOW REPLICA STATUS;"
        return self._sql(node, sql, vertical=True, raw=False)
