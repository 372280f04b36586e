"""Tests for WatchdogConfig loading and validation."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from metagraph_watchdog.config import WatchdogConfig, load_config
from metagraph_watchdog.errors import ConfigurationError
from metagraph_watchdog.models import Layer, NodeIdentity


# =============================================================================
# Defaults
# =============================================================================


class TestDefaults:
    """Tests for default configuration values."""

    def test_default_values(self):
        config = WatchdogConfig()

        assert [n.ip for n in config.nodes] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert config.ssh_key_path == "~/.ssh/id_ed25519"
        assert config.ssh_user == "root"
        assert config.snapshot_stall_minutes == 4
        assert config.health_check_interval_seconds == 60
        assert config.restart_cooldown_minutes == 10
        assert config.max_restarts_per_hour == 6
        assert config.health_data_stale_seconds == 60
        assert config.redis_url is None
        assert config.metrics_port == 0
        assert config.alerts_enabled is False
        assert config.dry_run is False

    def test_default_ports(self):
        config = WatchdogConfig()

        assert config.ports == {Layer.GL0: 9000, Layer.ML0: 9200, Layer.CL1: 9300, Layer.DL1: 9400}
        assert config.cli_ports[Layer.ML0] == 9202
        assert config.p2p_ports[Layer.DL1] == 9401

    def test_port_tables_not_shared(self):
        a, b = WatchdogConfig(), WatchdogConfig()
        a.ports[Layer.GL0] = 1

        assert b.ports[Layer.GL0] == 9000

    def test_container_name(self):
        config = WatchdogConfig()

        assert config.container_name(Layer.CL1, 2) == "cl1-2"

    def test_custom_container_template(self):
        config = WatchdogConfig(container_name_template="metagraph-{layer}-node{index}")

        assert config.container_name(Layer.ML0, 0) == "metagraph-ml0-node0"

    def test_node_index(self):
        config = WatchdogConfig()

        assert config.node_index("10.0.0.2") == 1
        assert config.node_index("192.168.1.1") == -1


# =============================================================================
# Environment
# =============================================================================


class TestFromEnv:
    """Tests for loading configuration from environment variables."""

    def test_nodes_from_env(self):
        with patch.dict(os.environ, {"NODE_IPS": "1.1.1.1, 2.2.2.2", "NODE_NAMES": "alpha"}):
            config = WatchdogConfig.from_env()

        assert config.nodes == [
            NodeIdentity(name="alpha", ip="1.1.1.1"),
            NodeIdentity(name="node2", ip="2.2.2.2"),
        ]

    def test_thresholds_from_env(self):
        env = {
            "SNAPSHOT_STALL_MINUTES": "6",
            "HEALTH_CHECK_INTERVAL": "30",
            "RESTART_COOLDOWN_MINUTES": "15",
            "MAX_RESTARTS_PER_HOUR": "3",
            "HEALTH_DATA_STALE_SECONDS": "90",
            "REDIS_RETRY_SECONDS": "45",
        }
        with patch.dict(os.environ, env):
            config = WatchdogConfig.from_env()

        assert config.snapshot_stall_minutes == 6
        assert config.health_check_interval_seconds == 30
        assert config.restart_cooldown_minutes == 15
        assert config.max_restarts_per_hour == 3
        assert config.health_data_stale_seconds == 90
        assert config.redis_retry_seconds == 45

    def test_ports_from_env(self):
        with patch.dict(os.environ, {"ML0_PORT": "19200", "CL1_CLI_PORT": "19302", "DL1_P2P_PORT": "19401"}):
            config = WatchdogConfig.from_env()

        assert config.ports[Layer.ML0] == 19200
        assert config.ports[Layer.GL0] == 9000
        assert config.cli_ports[Layer.CL1] == 19302
        assert config.p2p_ports[Layer.DL1] == 19401

    def test_urls_from_env(self):
        env = {
            "REDIS_URL": "redis://cache:6379/0",
            "WEBHOOK_URL": "https://hooks.example/abc",
            "MONITOR_URL": "https://monitor.example",
            "MONITOR_API_KEY": "secret",
        }
        with patch.dict(os.environ, env):
            config = WatchdogConfig.from_env()

        assert config.redis_url == "redis://cache:6379/0"
        assert config.webhook_url == "https://hooks.example/abc"
        assert config.monitor_url == "https://monitor.example"
        assert config.monitor_api_key == "secret"

    def test_blank_url_is_unset(self):
        with patch.dict(os.environ, {"REDIS_URL": "  "}):
            config = WatchdogConfig.from_env()

        assert config.redis_url is None

    def test_flags_from_env(self):
        with patch.dict(os.environ, {"WATCHDOG_ALERTS_ENABLED": "true", "WATCHDOG_DRY_RUN": "1"}):
            config = WatchdogConfig.from_env()

        assert config.alerts_enabled is True
        assert config.dry_run is True

    def test_invalid_values_ignored(self):
        """Unparseable numbers fall back to defaults."""
        with patch.dict(os.environ, {"MAX_RESTARTS_PER_HOUR": "lots", "GL0_PORT": "port"}):
            config = WatchdogConfig.from_env()

        assert config.max_restarts_per_hour == 6
        assert config.ports[Layer.GL0] == 9000

    def test_load_config_without_path_uses_env(self):
        with patch.dict(os.environ, {"SSH_USER": "deploy"}):
            config = load_config(None)

        assert config.ssh_user == "deploy"


# =============================================================================
# YAML
# =============================================================================


class TestFromYaml:
    """Tests for loading configuration from a YAML file."""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "watchdog.yaml"
        path.write_text(
            "nodes:\n"
            "  - {name: a, ip: 10.1.0.1}\n"
            "  - {name: b, ip: 10.1.0.2}\n"
            "ports:\n"
            "  ml0: 19200\n"
            "max_restarts_per_hour: 2\n"
            "redis_url: redis://localhost:6379\n"
        )

        config = load_config(path)

        assert config.node_ips == ["10.1.0.1", "10.1.0.2"]
        assert config.ports[Layer.ML0] == 19200
        assert config.ports[Layer.CL1] == 9300
        assert config.max_restarts_per_hour == 2
        assert config.redis_url == "redis://localhost:6379"

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "watchdog.yaml"
        path.write_text("not_a_setting: 1\nssh_user: ops\n")

        config = WatchdogConfig.from_yaml(path)

        assert config.ssh_user == "ops"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            WatchdogConfig.from_yaml(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("nodes: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            WatchdogConfig.from_yaml(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigurationError):
            WatchdogConfig.from_yaml(path)

    def test_invalid_node_entry(self, tmp_path):
        path = tmp_path / "nodes.yaml"
        path.write_text("nodes:\n  - {name: a}\n")

        with pytest.raises(ConfigurationError) as exc_info:
            WatchdogConfig.from_yaml(path)
        assert exc_info.value.context["field"] == "nodes"

    def test_unknown_layer_port(self, tmp_path):
        path = tmp_path / "ports.yaml"
        path.write_text("ports:\n  xl9: 1\n")

        with pytest.raises(ConfigurationError):
            WatchdogConfig.from_yaml(path)


# =============================================================================
# Validation
# =============================================================================


class TestValidate:
    """Tests for WatchdogConfig.validate."""

    def test_valid_default(self):
        WatchdogConfig().validate()

    def test_no_nodes(self):
        with pytest.raises(ConfigurationError, match="At least one node"):
            WatchdogConfig(nodes=[]).validate()

    def test_duplicate_nodes(self):
        nodes = [NodeIdentity(name="a", ip="1.1.1.1"), NodeIdentity(name="b", ip="1.1.1.1")]

        with pytest.raises(ConfigurationError, match="Duplicate"):
            WatchdogConfig(nodes=nodes).validate()

    @pytest.mark.parametrize(
        "field_name",
        ["snapshot_stall_minutes", "health_check_interval_seconds", "max_restarts_per_hour"],
    )
    def test_non_positive_thresholds(self, field_name):
        config = WatchdogConfig(**{field_name: 0})

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()
        assert exc_info.value.context["field"] == field_name

    def test_zero_cooldown_allowed(self):
        WatchdogConfig(restart_cooldown_minutes=0).validate()

    def test_bad_container_template(self):
        with pytest.raises(ConfigurationError, match="container_name_template"):
            WatchdogConfig(container_name_template="{layer}-{node}").validate()

    def test_configuration_error_code(self):
        with pytest.raises(ConfigurationError) as exc_info:
            WatchdogConfig(nodes=[]).validate()

        assert exc_info.value.code == "CONFIGURATION_ERROR"
        assert str(exc_info.value).startswith("[CONFIGURATION_ERROR]")
