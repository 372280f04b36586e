"""Watchdog configuration.

Configuration is a plain dataclass with defaults. Values are loaded from
environment variables (``WatchdogConfig.from_env``) or a YAML file
(``WatchdogConfig.from_yaml``), then validated once at startup.

Environment variables:
    NODE_IPS / NODE_NAMES      Comma-separated node addresses and names
    SSH_KEY_PATH / SSH_USER    Credentials for the remote command channel
    GL0_PORT .. DL1_PORT       Public HTTP ports per layer
    GL0_CLI_PORT ..            CLI (admin) ports per layer
    GL0_P2P_PORT ..            P2P ports per layer
    SNAPSHOT_STALL_MINUTES     Minutes without ordinal progress before a stall
    HEALTH_CHECK_INTERVAL      Seconds between daemon cycles
    RESTART_COOLDOWN_MINUTES   Minimum minutes between two restarts
    MAX_RESTARTS_PER_HOUR      Restart budget over a trailing hour
    HEALTH_DATA_STALE_SECONDS  Maximum age of cached health data
    REDIS_URL                  Cached health store
    REDIS_RETRY_SECONDS        Minimum seconds between Redis reconnect attempts
    WEBHOOK_URL                Discord-style webhook for notifications
    MONITOR_URL / MONITOR_API_KEY  Event sink
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from metagraph_watchdog.errors import ConfigurationError
from metagraph_watchdog.models import ALL_LAYERS, Layer, NodeIdentity

logger = logging.getLogger(__name__)

DEFAULT_NODE_IPS = ("10.0.0.1", "10.0.0.2", "10.0.0.3")

DEFAULT_PORTS = {Layer.GL0: 9000, Layer.ML0: 9200, Layer.CL1: 9300, Layer.DL1: 9400}
DEFAULT_CLI_PORTS = {Layer.GL0: 9002, Layer.ML0: 9202, Layer.CL1: 9302, Layer.DL1: 9402}
DEFAULT_P2P_PORTS = {Layer.GL0: 9001, Layer.ML0: 9201, Layer.CL1: 9301, Layer.DL1: 9401}

_TRUTHY = ("1", "true", "yes", "on")


def _default_nodes() -> list[NodeIdentity]:
    return [NodeIdentity(name=f"node{i + 1}", ip=ip) for i, ip in enumerate(DEFAULT_NODE_IPS)]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {raw!r}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid number for {name}: {raw!r}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_str(name: str) -> str | None:
    raw = os.environ.get(name, "").strip()
    return raw or None


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _nodes_from_env() -> list[NodeIdentity]:
    ips = _split_csv(os.environ.get("NODE_IPS", ""))
    if not ips:
        return _default_nodes()
    names = _split_csv(os.environ.get("NODE_NAMES", ""))
    return [
        NodeIdentity(name=names[i] if i < len(names) else f"node{i + 1}", ip=ip)
        for i, ip in enumerate(ips)
    ]


def _layer_ports(suffix: str, defaults: dict[Layer, int]) -> dict[Layer, int]:
    return {
        layer: _env_int(f"{layer.value.upper()}{suffix}", defaults[layer])
        for layer in ALL_LAYERS
    }


@dataclass
class WatchdogConfig:
    """Configuration for the metagraph watchdog."""

    nodes: list[NodeIdentity] = field(default_factory=_default_nodes)
    ssh_key_path: str = "~/.ssh/id_ed25519"
    ssh_user: str = "root"
    ssh_port: int = 22

    ports: dict[Layer, int] = field(default_factory=lambda: dict(DEFAULT_PORTS))
    cli_ports: dict[Layer, int] = field(default_factory=lambda: dict(DEFAULT_CLI_PORTS))
    p2p_ports: dict[Layer, int] = field(default_factory=lambda: dict(DEFAULT_P2P_PORTS))

    # Detection
    snapshot_stall_minutes: float = 4
    health_check_interval_seconds: int = 60

    # Restart safety
    restart_cooldown_minutes: float = 10
    max_restarts_per_hour: int = 6

    # Health data
    health_data_stale_seconds: float = 60
    redis_url: str | None = None
    redis_retry_seconds: float = 30

    # Outbound
    webhook_url: str | None = None
    monitor_url: str | None = None
    monitor_api_key: str | None = None

    # Ambient
    metrics_port: int = 0
    alerts_enabled: bool = False
    dry_run: bool = False
    container_name_template: str = "{layer}-{index}"
    http_timeout_seconds: float = 5.0
    ssh_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> WatchdogConfig:
        """Load configuration from environment variables.

        Unset variables keep their defaults; unparseable numbers are ignored.
        """
        defaults = cls()
        return cls(
            nodes=_nodes_from_env(),
            ssh_key_path=os.environ.get("SSH_KEY_PATH", defaults.ssh_key_path),
            ssh_user=os.environ.get("SSH_USER", defaults.ssh_user),
            ssh_port=_env_int("SSH_PORT", defaults.ssh_port),
            ports=_layer_ports("_PORT", DEFAULT_PORTS),
            cli_ports=_layer_ports("_CLI_PORT", DEFAULT_CLI_PORTS),
            p2p_ports=_layer_ports("_P2P_PORT", DEFAULT_P2P_PORTS),
            snapshot_stall_minutes=_env_float("SNAPSHOT_STALL_MINUTES", defaults.snapshot_stall_minutes),
            health_check_interval_seconds=_env_int(
                "HEALTH_CHECK_INTERVAL", defaults.health_check_interval_seconds
            ),
            restart_cooldown_minutes=_env_float(
                "RESTART_COOLDOWN_MINUTES", defaults.restart_cooldown_minutes
            ),
            max_restarts_per_hour=_env_int("MAX_RESTARTS_PER_HOUR", defaults.max_restarts_per_hour),
            health_data_stale_seconds=_env_float(
                "HEALTH_DATA_STALE_SECONDS", defaults.health_data_stale_seconds
            ),
            redis_url=_env_str("REDIS_URL"),
            redis_retry_seconds=_env_float("REDIS_RETRY_SECONDS", defaults.redis_retry_seconds),
            webhook_url=_env_str("WEBHOOK_URL"),
            monitor_url=_env_str("MONITOR_URL"),
            monitor_api_key=_env_str("MONITOR_API_KEY"),
            metrics_port=_env_int("WATCHDOG_METRICS_PORT", defaults.metrics_port),
            alerts_enabled=_env_bool("WATCHDOG_ALERTS_ENABLED", defaults.alerts_enabled),
            dry_run=_env_bool("WATCHDOG_DRY_RUN", defaults.dry_run),
            container_name_template=os.environ.get(
                "CONTAINER_NAME_TEMPLATE", defaults.container_name_template
            ),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds),
            ssh_timeout_seconds=_env_float("SSH_TIMEOUT_SECONDS", defaults.ssh_timeout_seconds),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> WatchdogConfig:
        """Load configuration from a YAML file.

        Keys mirror the dataclass field names. ``nodes`` is a list of
        ``{name, ip}`` mappings and the port tables are keyed by layer name.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", field="config")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}", field="config") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping", field="config")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WatchdogConfig:
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")

        kwargs: dict[str, Any] = {k: v for k, v in data.items() if k in known}

        if "nodes" in kwargs:
            try:
                kwargs["nodes"] = [NodeIdentity(**n) for n in kwargs["nodes"] or []]
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid nodes entry: {e}", field="nodes") from e

        for name, defaults in (
            ("ports", DEFAULT_PORTS),
            ("cli_ports", DEFAULT_CLI_PORTS),
            ("p2p_ports", DEFAULT_P2P_PORTS),
        ):
            if name in kwargs:
                kwargs[name] = _merge_ports(name, kwargs[name] or {}, defaults)

        return cls(**kwargs)

    def validate(self) -> None:
        """Raise ConfigurationError if the configuration cannot be used."""
        if not self.nodes:
            raise ConfigurationError("At least one node must be configured", field="nodes")

        ips = [n.ip for n in self.nodes]
        duplicates = sorted({ip for ip in ips if ips.count(ip) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Duplicate node addresses: {', '.join(duplicates)}", field="nodes"
            )

        for name in (
            "snapshot_stall_minutes",
            "health_check_interval_seconds",
            "max_restarts_per_hour",
            "health_data_stale_seconds",
            "http_timeout_seconds",
            "ssh_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", field=name)

        if self.restart_cooldown_minutes < 0:
            raise ConfigurationError(
                "restart_cooldown_minutes must not be negative", field="restart_cooldown_minutes"
            )

        for table in (self.ports, self.cli_ports, self.p2p_ports):
            missing = [layer.value for layer in ALL_LAYERS if layer not in table]
            if missing:
                raise ConfigurationError(f"Missing ports for layers: {', '.join(missing)}", field="ports")

        try:
            self.container_name(Layer.ML0, 0)
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid container_name_template {self.container_name_template!r}: {e}",
                field="container_name_template",
            ) from e

    @property
    def node_ips(self) -> list[str]:
        return [n.ip for n in self.nodes]

    def node_index(self, ip: str) -> int:
        """Position of ``ip`` in the configured node list, or -1."""
        for i, node in enumerate(self.nodes):
            if node.ip == ip:
                return i
        return -1

    def container_name(self, layer: Layer, index: int) -> str:
        return self.container_name_template.format(layer=layer.value, index=index)


def _merge_ports(name: str, raw: dict[str, Any], defaults: dict[Layer, int]) -> dict[Layer, int]:
    merged = dict(defaults)
    for key, value in raw.items():
        try:
            merged[Layer(str(key).lower())] = int(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {name} entry {key}={value!r}", field=name) from e
    return merged


def load_config(path: str | Path | None = None) -> WatchdogConfig:
    """Load configuration from ``path`` if given, otherwise from the environment."""
    if path:
        return WatchdogConfig.from_yaml(path)
    return WatchdogConfig.from_env()
