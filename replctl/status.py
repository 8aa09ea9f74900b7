#!/usr/bin/env python3
"""
Topology State Reader for replctl.

Parses the vertical output of ``SHOW REPLICA STATUS`` into a
ReplicationLink and builds TopologyState values. Reading never mutates a node.
"""

import re
import logging
from typing import Optional, Dict

from .admin import MySQLAdmin
from .config import NodeConfig, TopologyConfig
from .errors import AuthError, CommandError, NodeConnectionError, ParseError
from .models import LinkState, NodeStatus, ReplicationLink, TopologyState, utc_now

logger = logging.getLogger(__name__)

_ROW_MARKER = re.compile(r"^\*+\s*\d+\.\s*row\s*\*+$")
_FIELD = re.compile(r"^\s*([A-Za-z_]+):\s?(.*)$")

# (current name, pre-8.0.22 name)
_IO_RUNNING = ("Replica_IO_Running", "Slave_IO_Running")
_SQL_RUNNING = ("Replica_SQL_Running", "Slave_SQL_Running")
_SOURCE_HOST = ("Source_Host", "Master_Host")
_SOURCE_PORT = ("Source_Port", "Master_Port")
_LAG = ("Seconds_Behind_Source", "Seconds_Behind_Master")


def _first(fields: Dict[str, str], names: tuple) -> Optional[str]:
    for name in names:
        if name in fields:
            return fields[name]
    return None


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    value = value.strip()
    if not value or value.upper() == "NULL":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_status_fields(text: str) -> Dict[str, str]:
    """
    Split vertical (``\\G``) output of the first row into a field dict.

    Continuation lines (a wrapped GTID set) are appended to the previous field.

    Raises:
        ParseError: if a line is neither a field nor a continuation
    """
    fields: Dict[str, str] = {}
    last_key = None
    rows = 0

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if _ROW_MARKER.match(stripped):
            rows += 1
            if rows > 1:
                # only the default channel
                break
            continue
        match = _FIELD.match(line)
        if match:
            last_key = match.group(1)
            fields[last_key] = match.group(2).strip()
        elif last_key is not None:
            fields[last_key] += stripped
        else:
            raise ParseError(f"Unrecognized replica status line: {stripped!r}")

    return fields


def classify_link(io_running: str, sql_running: str, error: str) -> LinkState:
    """Map the IO/SQL thread flags and error text to a LinkState."""
    if io_running == "Yes" and sql_running == "Yes":
        return LinkState.STREAMING
    if error:
        return LinkState.ERROR
    if io_running == "Connecting":
        return LinkState.CONNECTING
    return LinkState.DISCONNECTED


def parse_replica_status(text: str, replica: str) -> Optional[ReplicationLink]:
    """
    Parse SHOW REPLICA STATUS output into a ReplicationLink.

    Args:
        text: Vertical output of the status statement
        replica: Name of the node the output came from

    Returns:
        The link, or None when the node has no replication configured

    Raises:
        ParseError: if the output format is not recognized
    """
    if not text.strip():
        return None

    fields = parse_status_fields(text)
    io_running = _first(fields, _IO_RUNNING)
    sql_running = _first(fields, _SQL_RUNNING)
    if io_running is None or sql_running is None:
        raise ParseError(
            f"Replica status from {replica} has no IO/SQL thread fields "
            f"(got {len(fields)} fields)"
        )

    errors = [
        fields.get(name, "").strip()
        for name in ("Last_IO_Error", "Last_SQL_Error", "Last_Error")
    ]
    error = next((e for e in errors if e), "")

    return ReplicationLink(
        replica=replica,
        source_host=_first(fields, _SOURCE_HOST) or "",
        source_port=_to_int(_first(fields, _SOURCE_PORT)),
        state=classify_link(io_running, sql_running, error),
        position=fields.get("Executed_Gtid_Set", ""),
        seconds_behind=_to_int(_first(fields, _LAG)),
        last_error=error,
        io_running=io_running,
        sql_running=sql_running,
    )


class TopologyReader:
    """Reads replication status of the topology's nodes."""

    def __init__(self, config: TopologyConfig, admin: MySQLAdmin):
        self.config = config
        self.admin = admin

    def read_status(self, node: NodeConfig) -> Optional[ReplicationLink]:
        """
        Read the replication link of a node.

        Returns:
            ReplicationLink, or None for a node without a link

        Raises:
            ParseError: unrecognized status format
            NodeConnectionError, AuthError, CommandError: from the executor
        """
        return parse_replica_status(self.admin.replica_status(node), node.name)

    def observe_node(self, node: NodeConfig) -> NodeStatus:
        """
        Build the last-known status of a node.

        An unrecognized status format is logged and reported as a degraded
        status instead of failing the whole read.
        """
        status = NodeStatus(name=node.name, role=node.role.value, observed_at=utc_now())
        try:
            databases = tuple(self.admin.list_databases(node))
            read_only = self.admin.is_read_only(node)
        except NodeConnectionError as e:
            logger.warning(f"{node.describe()} unreachable: {e}")
            return NodeStatus(
                name=node.name, role=node.role.value, reachable=False,
                error=str(e), observed_at=status.observed_at,
            )
        except (AuthError, CommandError) as e:
            logger.warning(f"Cannot read status of {node.describe()}: {e}")
            return NodeStatus(
                name=node.name, role=node.role.value, reachable=True, degraded=True,
                error=str(e), observed_at=status.observed_at,
            )

        try:
            link = self.read_status(node)
        except ParseError as e:
            logger.warning(f"Degraded status for {node.describe()}: {e}")
            return NodeStatus(
                name=node.name, role=node.role.value, reachable=True, read_only=read_only,
                databases=databases, degraded=True, error=str(e),
                observed_at=status.observed_at,
            )
        except (NodeConnectionError, AuthError, CommandError) as e:
            logger.warning(f"Cannot read replica status of {node.describe()}: {e}")
            return NodeStatus(
                name=node.name, role=node.role.value, reachable=True, read_only=read_only,
                databases=databases, degraded=True, error=str(e),
                observed_at=status.observed_at,
            )

        return NodeStatus(
            name=node.name, role=node.role.value, reachable=True, read_only=read_only,
            databases=databases, link=link, observed_at=status.observed_at,
        )

    def observe(self) -> TopologyState:
        """Read both nodes into a new TopologyState."""
        return TopologyState(
            primary=self.observe_node(self.config.primary),
            replica=self.observe_node(self.config.replica),
        )
