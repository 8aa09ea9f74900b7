#!/usr/bin/env python3
"""
Configuration management for replctl.

Defines the configuration schema for:
- Primary node (accepts writes, source of the replication stream)
- Replica node (read-only, fed by the primary)
- Admin web UI (phpMyAdmin) pointed at both nodes
- Operational settings (state directory, timeouts, recovery backoff)
"""

import json
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum
from pathlib import Path

from .errors import ConfigError


class NodeType(Enum):
    """How administrative commands reach a MySQL node."""
    DOCKER_CONTAINER = "docker_container"  # docker exec into the container
    TCP = "tcp"                            # local client binaries over TCP


class NodeRole(Enum):
    """Role of the node in the topology."""
    PRIMARY = "primary"
    REPLICA = "replica"


@dataclass
class NodeConfig:
    """Identity, address and credentials of a single MySQL node."""

    # Node identification
    name: str
    role: NodeRole
    node_type: NodeType = NodeType.DOCKER_CONTAINER

    # Connection details
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "root"
    password: str = ""

    # For Docker containers
    container_name: Optional[str] = None

    # MySQL configuration
    server_id: Optional[int] = None

    # Address the other node uses to reach this one (compose service name)
    internal_host: Optional[str] = None
    internal_port: int = 3306

    def __post_init__(self):
        """Set default values after initialization."""
        if isinstance(self.role, str):
            self.role = NodeRole(self.role)
        if isinstance(self.node_type, str):
            self.node_type = NodeType(self.node_type)
        if self.container_name is None and self.node_type == NodeType.DOCKER_CONTAINER:
            self.container_name = f"mysql-{self.name}"
        if self.internal_host is None:
            self.internal_host = self.container_name or self.host

    @property
    def is_primary(self) -> bool:
        return self.role == NodeRole.PRIMARY

    def describe(self) -> str:
        """Short human-readable address used in logs."""
        if self.node_type == NodeType.DOCKER_CONTAINER:
            return f"{self.name} (container {self.container_name})"
        return f"{self.name} ({self.host}:{self.port})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "role": self.role.value,
            "node_type": self.node_type.value,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "container_name": self.container_name,
            "server_id": self.server_id,
            "internal_host": self.internal_host,
            "internal_port": self.internal_port,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeConfig":
        """Create from dictionary."""
        data = data.copy()
        try:
            data["role"] = NodeRole(data["role"])
            data["node_type"] = NodeType(data.get("node_type", NodeType.DOCKER_CONTAINER.value))
            return cls(**data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid node configuration: {e}") from e


@dataclass
class RecoveryPolicy:
    """Bounded exponential backoff used after a node restart."""
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 8

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_delay": self.initial_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
            "max_attempts": self.max_attempts,
        }


@dataclass
class AdminUIConfig:
    """phpMyAdmin settings. Its configuration storage always lives on the primary."""
    image: str = "phpmyadmin:5.2"
    port: int = 8080
    control_user: str = "pma"
    control_password: str = "pma"
    pmadb: str = "phpmyadmin"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "port": self.port,
            "control_user": self.control_user,
            "control_password": self.control_password,
            "pmadb": self.pmadb,
        }


@dataclass
class TopologyConfig:
    """Configuration for the primary/replica pair."""

    # Topology identification
    topology_name: str = "mysql_pair"

    # Nodes
    primary: Optional[NodeConfig] = None
    replica: Optional[NodeConfig] = None

    # MySQL configuration
    mysql_version: str = "8.0.36"
    mysql_image: str = "mysql:8.0"
    replication_user: str = "repl"
    replication_password: str = "repl"

    # Client binaries (for tcp nodes)
    mysql_client_path: str = "mysql"
    mysqldump_path: str = "mysqldump"
    docker_path: str = "docker"

    # Timeouts (seconds)
    command_timeout: float = 30.0
    dump_timeout: float = 3600.0
    verify_timeout: float = 60.0
    verify_interval: float = 2.0

    recovery: RecoveryPolicy = field(default_factory=RecoveryPolicy)
    admin_ui: AdminUIConfig = field(default_factory=AdminUIConfig)

    # Paths
    base_dir: Path = field(default_factory=lambda: Path.cwd())
    config_dir: Path = field(default_factory=lambda: Path.cwd() / "config")
    state_dir: Path = field(default_factory=lambda: Path.cwd() / "state")
    compose_file: Path = field(default_factory=lambda: Path.cwd() / "docker-compose.yml")

    def __post_init__(self):
        """Initialize paths."""
        if isinstance(self.base_dir, str):
            self.base_dir = Path(self.base_dir)
        if isinstance(self.config_dir, str):
            self.config_dir = Path(self.config_dir)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.compose_file, str):
            self.compose_file = Path(self.compose_file)

    @property
    def snapshot_dir(self) -> Path:
        return self.state_dir / "snapshots"

    def validate(self) -> None:
        """
        Check the topology is complete and roles are consistent.

        Raises:
            ConfigError: if a node is missing or has the wrong role
        """
        if self.primary is None or self.replica is None:
            raise ConfigError("Topology needs both a primary and a replica node")
        if self.primary.role != NodeRole.PRIMARY:
            raise ConfigError(f"Node {self.primary.name} is configured as primary but has role {self.primary.role.value}")
        if self.replica.role != NodeRole.REPLICA:
            raise ConfigError(f"Node {self.replica.name} is configured as replica but has role {self.replica.role.value}")
        if self.primary.name == self.replica.name:
            raise ConfigError("Primary and replica must have different names")
        if self.verify_timeout <= 0 or self.verify_interval <= 0:
            raise ConfigError("verify_timeout and verify_interval must be positive")
        if self.recovery.max_attempts < 1:
            raise ConfigError("recovery.max_attempts must be at least 1")

    def version_tuple(self) -> tuple:
        """MySQL version as a comparable tuple, e.g. (8, 0, 36)."""
        parts = []
        for piece in self.mysql_version.split("."):
            digits = "".join(ch for ch in piece if ch.isdigit())
            parts.append(int(digits) if digits else 0)
        return tuple(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topology_name": self.topology_name,
            "mysql_version": self.mysql_version,
            "mysql_image": self.mysql_image,
            "replication_user": self.replication_user,
            "replication_password": self.replication_password,
            "mysql_client_path": self.mysql_client_path,
            "mysqldump_path": self.mysqldump_path,
            "docker_path": self.docker_path,
            "command_timeout": self.command_timeout,
            "dump_timeout": self.dump_timeout,
            "verify_timeout": self.verify_timeout,
            "verify_interval": self.verify_interval,
            "recovery": self.recovery.to_dict(),
            "admin_ui": self.admin_ui.to_dict(),
            "base_dir": str(self.base_dir),
            "config_dir": str(self.config_dir),
            "state_dir": str(self.state_dir),
            "compose_file": str(self.compose_file),
            "primary": self.primary.to_dict() if self.primary else None,
            "replica": self.replica.to_dict() if self.replica else None,
        }

    def save(self, filepath: Optional[Path] = None) -> Path:
        """Save configuration to JSON file."""
        if filepath is None:
            filepath = self.config_dir / "topology.json"

        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

        return filepath

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopologyConfig":
        defaults = cls()
        base_dir = Path(data.get("base_dir", "."))
        config = cls(
            topology_name=data.get("topology_name", defaults.topology_name),
            mysql_version=data.get("mysql_version", defaults.mysql_version),
            mysql_image=data.get("mysql_image", defaults.mysql_image),
            replication_user=data.get("replication_user", defaults.replication_user),
            replication_password=data.get("replication_password", defaults.replication_password),
            mysql_client_path=data.get("mysql_client_path", defaults.mysql_client_path),
            mysqldump_path=data.get("mysqldump_path", defaults.mysqldump_path),
            docker_path=data.get("docker_path", defaults.docker_path),
            command_timeout=float(data.get("command_timeout", defaults.command_timeout)),
            dump_timeout=float(data.get("dump_timeout", defaults.dump_timeout)),
            verify_timeout=float(data.get("verify_timeout", defaults.verify_timeout)),
            verify_interval=float(data.get("verify_interval", defaults.verify_interval)),
            recovery=RecoveryPolicy(**data.get("recovery", {})),
            admin_ui=AdminUIConfig(**data.get("admin_ui", {})),
            base_dir=base_dir,
            config_dir=Path(data.get("config_dir", base_dir / "config")),
            state_dir=Path(data.get("state_dir", base_dir / "state")),
            compose_file=Path(data.get("compose_file", base_dir / "docker-compose.yml")),
        )

        if data.get("primary"):
            config.primary = NodeConfig.from_dict(data["primary"])
        if data.get("replica"):
            config.replica = NodeConfig.from_dict(data["replica"])

        return config

    @classmethod
    def load(cls, filepath: Path) -> "TopologyConfig":
        """Load configuration from JSON file."""
        if not filepath.exists():
            raise ConfigError(f"Configuration not found at {filepath}")
        try:
            with open(filepath) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Configuration {filepath} is not valid JSON: {e}") from e

        try:
            config = cls.from_dict(data)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration in {filepath}: {e}") from e
        config.validate()
        return config


def create_default_config(
    base_dir: Optional[Path] = None,
    root_password: str = "root",
    replication_password: str = "repl",
    node_type: NodeType = NodeType.DOCKER_CONTAINER,
    primary_port: int = 3306,
    replica_port: int = 3307,
) -> TopologyConfig:
    """
    Create a default primary/replica configuration.

    Args:
        base_dir: Base directory for config, state and the compose file
        root_password: MySQL root password for both nodes
        replication_password: Password of the replication user
        node_type: How commands reach the nodes
        primary_port: Host port published for the primary
        replica_port: Host port published for the replica

    Returns:
        TopologyConfig instance
    """
    base_dir = base_dir or Path.cwd()

    config = TopologyConfig(
        replication_password=replication_password,
        base_dir=base_dir,
        config_dir=base_dir / "config",
        state_dir=base_dir / "state",
        compose_file=base_dir / "docker-compose.yml",
    )

    config.primary = NodeConfig(
        name="primary",
        role=NodeRole.PRIMARY,
        node_type=node_type,
        port=primary_port,
        password=root_password,
        server_id=1,
    )
    config.replica = NodeConfig(
        name="replica",
        role=NodeRole.REPLICA,
        node_type=node_type,
        port=replica_port,
        password=root_password,
        server_id=2,
    )

    return config
