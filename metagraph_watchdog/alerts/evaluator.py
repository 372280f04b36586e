"""Alert evaluator.

Collects resource and cluster alerts from every node. Resource figures and
container/log state are read over SSH, GL0 peer counts over HTTP.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from metagraph_watchdog.alerts.cluster_alerts import (
    ClusterAlert,
    DL1EventType,
    DL1LogEvent,
    ML0SnapshotLogEntry,
    check_cl1_container_down,
    check_dl1_download_only,
    check_gl0_peer_drop,
    check_ml0_zero_updates,
    is_benign_ember_error,
)
from metagraph_watchdog.alerts.resource_alerts import (
    NodeResourceSnapshot,
    ResourceAlert,
    evaluate_resource_alerts,
)
from metagraph_watchdog.coordination.events import Severity
from metagraph_watchdog.core.node_api import get_cluster_info
from metagraph_watchdog.errors import SSHError
from metagraph_watchdog.models import Layer

logger = logging.getLogger(__name__)

RESOURCE_COMMAND = "; ".join([
    "echo RAM_TOTAL=$(grep MemTotal /proc/meminfo | awk '{print $2}')",
    "echo RAM_AVAIL=$(grep MemAvailable /proc/meminfo | awk '{print $2}')",
    "echo SWAP_TOTAL=$(grep SwapTotal /proc/meminfo | awk '{print $2}')",
    "echo SWAP_FREE=$(grep SwapFree /proc/meminfo | awk '{print $2}')",
    "echo DISK_TOTAL=$(df -B1 / | tail -1 | awk '{print $2}')",
    "echo DISK_USED=$(df -B1 / | tail -1 | awk '{print $3}')",
    "echo CPU_PCT=$(top -bn1 | grep 'Cpu(s)' | awk '{print 100 - $8}')",
])

LOG_WINDOW = "15m"
_VAR_RE = re.compile(r"^(\w+)=(.*)$")
_UPDATES_RE = re.compile(r"Got (\d+) updates")
# POSIX ERE for the remote grep; it has no \d
_UPDATES_PATTERN = "Got [0-9]+ updates"
_DL1_PATTERN = "DownloadPerformed|RoundFinished|BlockProduced"


@dataclass
class AlertEvaluationResult:
    resource_alerts: list[ResourceAlert] = field(default_factory=list)
    cluster_alerts: list[ClusterAlert] = field(default_factory=list)

    @property
    def has_critical(self) -> bool:
        return any(
            a.severity == Severity.CRITICAL for a in [*self.resource_alerts, *self.cluster_alerts]
        )


def parse_resource_output(node_ip: str, output: str) -> NodeResourceSnapshot:
    """Parse KEY=value lines printed by RESOURCE_COMMAND (RAM/swap in kB)."""
    values: dict[str, float] = {}
    for line in output.splitlines():
        match = _VAR_RE.match(line.strip())
        if not match:
            continue
        try:
            values[match.group(1)] = float(match.group(2))
        except ValueError:
            values[match.group(1)] = 0.0

    ram_total = values.get("RAM_TOTAL", 0.0)
    swap_total = values.get("SWAP_TOTAL", 0.0)
    return NodeResourceSnapshot(
        node_ip=node_ip,
        ram_total=ram_total * 1024,
        ram_used=(ram_total - values.get("RAM_AVAIL", 0.0)) * 1024,
        swap_total=swap_total * 1024,
        swap_used=(swap_total - values.get("SWAP_FREE", 0.0)) * 1024,
        disk_total=values.get("DISK_TOTAL", 0.0),
        disk_used=values.get("DISK_USED", 0.0),
        cpu_pct=values.get("CPU_PCT", 0.0),
    )


def parse_ml0_log(lines: list[str]) -> list[ML0SnapshotLogEntry]:
    now = datetime.now(timezone.utc)
    entries = []
    for line in lines:
        if is_benign_ember_error(line):
            continue
        match = _UPDATES_RE.search(line)
        if match:
            entries.append(ML0SnapshotLogEntry(timestamp=now, update_count=int(match.group(1))))
    return entries


def parse_dl1_log(lines: list[str]) -> list[DL1LogEvent]:
    now = datetime.now(timezone.utc)
    events = []
    for line in lines:
        if is_benign_ember_error(line):
            continue
        for event_type in (
            DL1EventType.DOWNLOAD_PERFORMED,
            DL1EventType.ROUND_FINISHED,
            DL1EventType.BLOCK_PRODUCED,
        ):
            if event_type.value in line:
                events.append(DL1LogEvent(timestamp=now, event_type=event_type))
                break
    return events


class AlertEvaluator:
    """Runs every alert rule across the configured nodes."""

    def __init__(self, config, remote):
        self.config = config
        self.remote = remote

    async def fetch_node_resources(self, ip: str) -> NodeResourceSnapshot | None:
        try:
            result = await self.remote.exec(ip, RESOURCE_COMMAND)
        except SSHError as e:
            logger.warning(f"[Alerts] Failed to fetch resources from {ip}: {e}")
            return None
        if not result.success:
            logger.warning(f"[Alerts] SSH to {ip} returned code {result.returncode}: {result.stderr}")
            return None
        return parse_resource_output(ip, result.stdout)

    async def check_resources(self) -> list[ResourceAlert]:
        snapshots = await asyncio.gather(*(self.fetch_node_resources(n.ip) for n in self.config.nodes))
        alerts: list[ResourceAlert] = []
        for snapshot in snapshots:
            if snapshot is not None:
                alerts.extend(evaluate_resource_alerts(snapshot))
        return alerts

    async def check_gl0_peers(self) -> list[ClusterAlert]:
        alerts = []
        port = self.config.ports[Layer.GL0]
        for node in self.config.nodes:
            cluster = await get_cluster_info(node.ip, port, self.config.http_timeout_seconds)
            if not cluster:
                # Unreachable; the unhealthy-nodes check covers it
                continue
            alert = check_gl0_peer_drop(node.ip, len(cluster) - 1)
            if alert:
                alerts.append(alert)
        return alerts

    async def check_cl1_containers(self) -> list[ClusterAlert]:
        alerts = []
        for i, node in enumerate(self.config.nodes):
            container = self.config.container_name(Layer.CL1, i)
            try:
                running = await self.remote.is_container_running(node.ip, container)
            except SSHError as e:
                logger.debug(f"[Alerts] Could not inspect {container} on {node.ip}: {e}")
                running = False
            alert = check_cl1_container_down(node.ip, running)
            if alert:
                alerts.append(alert)
        return alerts

    async def _recent_log_lines(self, ip: str, container: str, pattern: str) -> list[str]:
        command = f"docker logs --since {LOG_WINDOW} {container} 2>&1 | grep -E '{pattern}' | tail -200"
        try:
            result = await self.remote.exec(ip, command)
        except SSHError as e:
            logger.debug(f"[Alerts] Could not read logs of {container} on {ip}: {e}")
            return []
        return result.stdout.splitlines()

    async def check_log_patterns(self) -> list[ClusterAlert]:
        alerts = []
        for i, node in enumerate(self.config.nodes):
            ml0_lines = await self._recent_log_lines(
                node.ip, self.config.container_name(Layer.ML0, i), _UPDATES_PATTERN
            )
            alert = check_ml0_zero_updates(node.ip, parse_ml0_log(ml0_lines))
            if alert:
                alerts.append(alert)

            dl1_lines = await self._recent_log_lines(
                node.ip, self.config.container_name(Layer.DL1, i), _DL1_PATTERN
            )
            alert = check_dl1_download_only(node.ip, parse_dl1_log(dl1_lines))
            if alert:
                alerts.append(alert)
        return alerts

    async def evaluate(self) -> AlertEvaluationResult:
        resource_alerts, gl0_alerts, cl1_alerts, log_alerts = await asyncio.gather(
            self.check_resources(),
            self.check_gl0_peers(),
            self.check_cl1_containers(),
            self.check_log_patterns(),
        )
        return AlertEvaluationResult(
            resource_alerts=resource_alerts,
            cluster_alerts=[*gl0_alerts, *cl1_alerts, *log_alerts],
        )
