#!/usr/bin/env python3
"""
docker-compose manifest for the primary/replica pair and the admin UI.

Both MySQL nodes run with GTIDs and binary logging enabled; the replica is
started read-only. phpMyAdmin is pointed at both nodes and keeps its
configuration storage on the primary, where writes are allowed.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .config import NodeConfig, TopologyConfig

logger = logging.getLogger(__name__)

ADMIN_UI_SERVICE = "phpmyadmin"


def _mysql_command(node: NodeConfig) -> str:
    flags = [
        "mysqld",
        f"--server-id={node.server_id or 1}",
        "--log-bin=mysql-bin",
        "--gtid-mode=ON",
        "--enforce-gtid-consistency=ON",
        "--binlog-format=ROW",
    ]
    if not node.is_primary:
        # super_read_only would also block the root restores
        flags.extend(["--relay-log=mysql-relay-bin", "--read-only=ON"])
    return " ".join(flags)


def _mysql_service(config: TopologyConfig, node: NodeConfig) -> Dict[str, Any]:
    service = {
        "image": config.mysql_image,
        "container_name": node.container_name,
        "hostname": node.internal_host,
        "environment": {
            "MYSQL_ROOT_PASSWORD": node.password,
        },
        "ports": [f"{node.port}:{node.internal_port}"],
        "volumes": [f"{node.name}-data:/var/lib/mysql"],
        "command": _mysql_command(node),
        "restart": "unless-stopped",
        "healthcheck": {
            "test": ["CMD", "mysqladmin", "ping", "-h", "localhost"],
            "interval": "10s",
            "timeout": "5s",
            "retries": 5,
        },
    }
    if not node.is_primary:
        service["depends_on"] = [config.primary.name]
    return service


def _admin_ui_service(config: TopologyConfig) -> Dict[str, Any]:
    ui = config.admin_ui
    primary, replica = config.primary, config.replica
    return {
        "image": ui.image,
        "container_name": f"{config.topology_name}-{ADMIN_UI_SERVICE}",
        "environment": {
            "PMA_HOSTS": f"{primary.internal_host},{replica.internal_host}",
            "PMA_PORTS": f"{primary.internal_port},{replica.internal_port}",
            "PMA_CONTROLHOST": primary.internal_host,
            "PMA_CONTROLPORT": str(primary.internal_port),
            "PMA_CONTROLUSER": ui.control_user,
            "PMA_CONTROLPASS": ui.control_password,
            "PMA_PMADB": ui.pmadb,
        },
        "ports": [f"{ui.port}:80"],
        "depends_on": [primary.name, replica.name],
        "restart": "unless-stopped",
    }


def render_compose(config: TopologyConfig) -> Dict[str, Any]:
    """
    Build the compose document for the topology.

    Service names are the node names; each node's ``internal_host`` is its
    hostname on the compose network.

    Args:
        config: Validated topology configuration

    Returns:
        The compose document as a dict
    """
    config.validate()
    services = {
        config.primary.name: _mysql_service(config, config.primary),
        config.replica.name: _mysql_service(config, config.replica),
        ADMIN_UI_SERVICE: _admin_ui_service(config),
    }
    return {
        "name": config.topology_name.replace("_", "-").lower(),
        "services": services,
        "volumes": {
            f"{config.primary.name}-data": {},
            f"{config.replica.name}-data": {},
        },
    }


def write_compose(config: TopologyConfig, path: Optional[Path] = None) -> Path:
    """
    Write the compose manifest.

    Returns:
        Path to the written file
    """
    path = path or config.compose_file
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(render_compose(config), f, default_flow_style=False, sort_keys=False)

    logger.info(f"Wrote compose manifest to {path}")
    return path
