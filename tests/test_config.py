"""Tests for topology configuration."""
import json

import pytest

from replctl.config import NodeConfig, NodeRole, NodeType, TopologyConfig, create_default_config
from replctl.errors import ConfigError


class TestNodeConfig:
    def test_docker_defaults(self):
        node = NodeConfig(name="primary", role=NodeRole.PRIMARY)
        assert node.container_name == "mysql-primary"
        assert node.internal_host == "mysql-primary"
        assert node.is_primary

    def test_tcp_node_reached_by_host(self, tcp_node):
        assert tcp_node.container_name is None
        assert tcp_node.internal_host == "10.0.0.5"
        assert tcp_node.describe() == "db1 (10.0.0.5:3310)"

    def test_bad_role(self):
        with pytest.raises(ConfigError):
            NodeConfig.from_dict({"name": "x", "role": "leader"})


class TestTopologyConfig:
    def test_save_and_load(self, config):
        config.recovery.max_attempts = 3
        config.admin_ui.port = 9090
        path = config.save()

        loaded = TopologyConfig.load(path)

        assert path == config.config_dir / "topology.json"
        assert loaded.to_dict() == config.to_dict()
        assert loaded.primary.role == NodeRole.PRIMARY
        assert loaded.replica.node_type == NodeType.DOCKER_CONTAINER
        assert loaded.snapshot_dir == config.state_dir / "snapshots"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            TopologyConfig.load(tmp_path / "topology.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "topology.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            TopologyConfig.load(path)

    def test_unknown_setting(self, config, tmp_path):
        data = config.to_dict()
        data["recovery"]["jitter"] = 1
        path = tmp_path / "topology.json"
        path.write_text(json.dumps(data))
        with pytest.raises(ConfigError):
            TopologyConfig.load(path)

    def test_roles_must_match(self, config):
        config.replica.role = NodeRole.PRIMARY
        with pytest.raises(ConfigError, match="replica"):
            config.validate()

    def test_both_nodes_required(self, config):
        config.replica = None
        with pytest.raises(ConfigError):
            config.validate()

    @pytest.mark.parametrize("version, expected", [
        ("8.0.36", (8, 0, 36)),
        ("8.4.2-commercial", (8, 4, 2)),
        ("9.0", (9, 0)),
    ])
    def test_version_tuple(self, config, version, expected):
        config.mysql_version = version
        assert config.version_tuple() == expected


def test_create_default_config(tmp_path):
    config = create_default_config(base_dir=tmp_path, node_type=NodeType.TCP, replica_port=3317)
    config.validate()
    assert config.state_dir == tmp_path / "state"
    assert config.compose_file == tmp_path / "docker-compose.yml"
    assert config.replica.port == 3317
    assert config.replica.internal_host == "127.0.0.1"
    assert (config.primary.server_id, config.replica.server_id) == (1, 2)
