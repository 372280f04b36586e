"""
Shared pytest fixtures for metagraph watchdog tests.

Factory fixtures return callables so that each test can build exactly the
config or snapshot it needs. Snapshots default to a fully healthy 3-node
cluster where every node agrees on cluster membership.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from metagraph_watchdog.config import WatchdogConfig
from metagraph_watchdog.models import (
    ALL_LAYERS,
    HealthSnapshot,
    HealthSource,
    Layer,
    LayerHealth,
    NodeHealthData,
    NodeIdentity,
    NodeInfo,
)

NODE_IPS = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
MAJORITY_HASH = "aaaaaaaaaaaa"
START_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Controllable clock. ``sleep`` advances time instead of waiting."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Config
# =============================================================================


@pytest.fixture
def make_config() -> Callable[..., WatchdogConfig]:
    """Factory for configs over the three test nodes."""

    def _make(**overrides) -> WatchdogConfig:
        values = {
            "nodes": [NodeIdentity(name=f"node{i + 1}", ip=ip) for i, ip in enumerate(NODE_IPS)],
            "ssh_key_path": "/tmp/test_key",
        }
        values.update(overrides)
        return WatchdogConfig(**values)

    return _make


@pytest.fixture
def config(make_config) -> WatchdogConfig:
    return make_config()


# =============================================================================
# Snapshots
# =============================================================================


@pytest.fixture
def build_snapshot() -> Callable[..., HealthSnapshot]:
    """Factory for health snapshots.

    ``overrides`` maps ``(ip, layer)`` to a dict of LayerHealth fields to
    change, or to None to drop that layer entry entirely.
    """

    def _build(
        overrides: dict | None = None,
        ips: list[str] | None = None,
        ordinal: int = 100,
        source: HealthSource = HealthSource.CACHE,
        timestamp: datetime = START_TIME,
    ) -> HealthSnapshot:
        overrides = overrides or {}
        ips = ips or NODE_IPS
        nodes = []
        for i, ip in enumerate(ips):
            layers = []
            for layer in ALL_LAYERS:
                if (ip, layer) in overrides and overrides[(ip, layer)] is None:
                    continue
                fields = {
                    "layer": layer,
                    "state": "Ready",
                    "ordinal": ordinal,
                    "reachable": True,
                    "cluster_size": len(ips),
                    "cluster_hash": MAJORITY_HASH,
                }
                fields.update(overrides.get((ip, layer)) or {})
                layers.append(LayerHealth(**fields))
            nodes.append(NodeHealthData(ip=ip, name=f"node{i + 1}", layers=layers))
        return HealthSnapshot(timestamp=timestamp, nodes=nodes, stale=False, source=source)

    return _build


@pytest.fixture
def unreachable():
    """LayerHealth overrides for an unreachable node layer."""
    return {"reachable": False, "state": "Unreachable", "ordinal": -1, "cluster_hash": None}


# =============================================================================
# Remote / node API doubles
# =============================================================================


@pytest.fixture
def remote() -> MagicMock:
    """RemoteCommandChannel double recording every docker operation."""
    channel = MagicMock()
    channel.dry_run = False
    channel.kill_layer_process = AsyncMock()
    channel.docker_control = AsyncMock()
    channel.join_cluster = AsyncMock()
    channel.exec = AsyncMock()
    channel.is_container_running = AsyncMock(return_value=True)
    return channel


def node_info(ip: str, state: str = "Ready") -> NodeInfo:
    return NodeInfo(state=state, id=f"id-{ip}", host=ip, public_port=9200, p2p_port=9201)


@pytest.fixture
def ready_node_info() -> AsyncMock:
    """node_info_fetch double: every node answers Ready with id ``id-<ip>``."""
    return AsyncMock(side_effect=lambda ip, port: node_info(ip))
