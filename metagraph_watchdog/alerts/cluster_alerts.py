"""Cluster-level alert rules.

1. ML0 zero-updates: ML0 snapshots carry 0 updates for several
   consecutive snapshots, meaning the DL1 pipeline is broken.
2. DL1 download-only: DL1 keeps downloading blocks without producing any.
3. GL0 peer drop: a GL0 node sees no peers (solo chain, split-brain).
4. CL1 container down.

These rules raise alerts only; they never trigger restarts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from metagraph_watchdog.coordination.events import Severity

ML0_ZERO_UPDATES = "ml0-zero-updates"
DL1_DOWNLOAD_ONLY = "dl1-download-only"
GL0_PEER_DROP = "gl0-peer-drop"
CL1_CONTAINER_DOWN = "cl1-container-down"

# Logged by external scanners sending malformed requests; not actionable
BENIGN_EMBER_PATTERN = "EmberServerBuilderCompanionPlatform"


class DL1EventType(str, Enum):
    DOWNLOAD_PERFORMED = "DownloadPerformed"
    ROUND_FINISHED = "RoundFinished"
    BLOCK_PRODUCED = "BlockProduced"
    OTHER = "Other"


@dataclass
class ML0SnapshotLogEntry:
    timestamp: datetime
    update_count: int


@dataclass
class DL1LogEvent:
    timestamp: datetime
    event_type: DL1EventType


@dataclass
class ClusterAlert:
    node_ip: str
    rule_id: str
    severity: Severity
    message: str
    details: dict[str, Any] = field(default_factory=dict)


def _longest_run(flags) -> int:
    longest = current = 0
    for flag in flags:
        if flag is None:
            continue
        current = current + 1 if flag else 0
        longest = max(longest, current)
    return longest


def check_ml0_zero_updates(
    node_ip: str, entries: list[ML0SnapshotLogEntry], threshold: int = 3
) -> ClusterAlert | None:
    """Critical when at least ``threshold`` consecutive snapshots had no updates."""
    run = _longest_run(e.update_count == 0 for e in entries)
    if run < threshold:
        return None
    return ClusterAlert(
        node_ip=node_ip,
        rule_id=ML0_ZERO_UPDATES,
        severity=Severity.CRITICAL,
        message=f"{node_ip}: ML0 received 0 updates for {run} consecutive snapshots, DL1 pipeline broken",
        details={"consecutiveZeroUpdates": run, "threshold": threshold},
    )


def check_dl1_download_only(
    node_ip: str, events: list[DL1LogEvent], download_threshold: int = 5
) -> ClusterAlert | None:
    """Critical when at least ``download_threshold`` downloads happen with no block produced.

    RoundFinished and BlockProduced reset the run; Other events are ignored.
    """

    def flag(event: DL1LogEvent) -> bool | None:
        if event.event_type == DL1EventType.DOWNLOAD_PERFORMED:
            return True
        if event.event_type in (DL1EventType.ROUND_FINISHED, DL1EventType.BLOCK_PRODUCED):
            return False
        return None

    run = _longest_run(flag(e) for e in events)
    if run < download_threshold:
        return None
    return ClusterAlert(
        node_ip=node_ip,
        rule_id=DL1_DOWNLOAD_ONLY,
        severity=Severity.CRITICAL,
        message=(
            f"{node_ip}: DL1 in download-only mode, {run} consecutive downloads and no block production. "
            f"Check DL1 peer count and GL0 cluster state."
        ),
        details={"consecutiveDownloads": run, "threshold": download_threshold},
    )


def check_gl0_peer_drop(node_ip: str, peer_count: int) -> ClusterAlert | None:
    """Critical when a GL0 node has no peers. One peer is a valid 2-node majority."""
    if peer_count > 0:
        return None
    return ClusterAlert(
        node_ip=node_ip,
        rule_id=GL0_PEER_DROP,
        severity=Severity.CRITICAL,
        message=f"{node_ip}: GL0 is isolated, peer count is 0 (split-brain). Restart with seedlist required.",
        details={"peerCount": peer_count},
    )


def check_cl1_container_down(node_ip: str, is_running: bool) -> ClusterAlert | None:
    if is_running:
        return None
    return ClusterAlert(
        node_ip=node_ip,
        rule_id=CL1_CONTAINER_DOWN,
        severity=Severity.WARNING,
        message=f"{node_ip}: CL1 container is not running, no currency consensus on this node",
        details={"isRunning": False},
    )


def is_benign_ember_error(log_line: str) -> bool:
    return BENIGN_EMBER_PATTERN in log_line
