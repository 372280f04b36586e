"""Host resource alert thresholds.

Evaluates RAM, swap, disk and CPU usage of a node against fixed
warning/critical thresholds, plus absence of tracked layer processes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from metagraph_watchdog.coordination.events import Severity

HOST = "HOST"
PROCESS_LAYERS = ("GL0", "ML0", "DL1", "CL1")

RAM_WARNING_PCT = 70
RAM_CRITICAL_PCT = 85
SWAP_WARNING_PCT = 50
SWAP_CRITICAL_PCT = 80
DISK_WARNING_PCT = 70
DISK_CRITICAL_PCT = 85
CPU_WARNING_PCT = 90


@dataclass
class NodeResourceSnapshot:
    """Raw resource figures for one node (sizes in bytes, CPU in percent)"""
    node_ip: str
    ram_total: float = 0
    ram_used: float = 0
    swap_total: float = 0
    swap_used: float = 0
    disk_total: float = 0
    disk_used: float = 0
    cpu_pct: float = 0
    # Per-layer RSS; a missing key means untracked, None means not running
    layer_rss: dict[str, Optional[float]] = field(default_factory=dict)


@dataclass
class ResourceAlert:
    node_ip: str
    layer: str
    metric: str
    value: float
    threshold: float
    severity: Severity
    message: str


def calc_pct(used: float, total: float) -> float:
    if total == 0:
        return 0.0
    return used / total * 100


def eval_severity(value: float, warning: float, critical: float) -> Severity | None:
    if value >= critical:
        return Severity.CRITICAL
    if value >= warning:
        return Severity.WARNING
    return None


def _threshold_alert(
    node_ip: str, metric: str, label: str, pct: float, warning: float, critical: float
) -> ResourceAlert | None:
    severity = eval_severity(pct, warning, critical)
    if severity is None:
        return None
    threshold = critical if severity == Severity.CRITICAL else warning
    return ResourceAlert(
        node_ip=node_ip,
        layer=HOST,
        metric=metric,
        value=pct,
        threshold=threshold,
        severity=severity,
        message=f"{node_ip}: {label} usage at {pct:.1f}% exceeds {threshold}% threshold ({severity.value.lower()})",
    )


def check_process_absent(snapshot: NodeResourceSnapshot, layer: str) -> ResourceAlert | None:
    if layer not in snapshot.layer_rss or snapshot.layer_rss[layer] is not None:
        return None
    return ResourceAlert(
        node_ip=snapshot.node_ip,
        layer=layer,
        metric="process_absent",
        value=0,
        threshold=0,
        severity=Severity.WARNING,
        message=f"{snapshot.node_ip}: {layer} process is absent (RSS null), check container status",
    )


def evaluate_resource_alerts(snapshot: NodeResourceSnapshot) -> list[ResourceAlert]:
    ip = snapshot.node_ip
    candidates = [
        _threshold_alert(
            ip, "ram_pct", "RAM", calc_pct(snapshot.ram_used, snapshot.ram_total),
            RAM_WARNING_PCT, RAM_CRITICAL_PCT,
        ),
    ]

    # No swap configured is not an alert
    if snapshot.swap_total > 0:
        candidates.append(
            _threshold_alert(
                ip, "swap_pct", "Swap", calc_pct(snapshot.swap_used, snapshot.swap_total),
                SWAP_WARNING_PCT, SWAP_CRITICAL_PCT,
            )
        )

    candidates.append(
        _threshold_alert(
            ip, "disk_pct", "Disk", calc_pct(snapshot.disk_used, snapshot.disk_total),
            DISK_WARNING_PCT, DISK_CRITICAL_PCT,
        )
    )

    # CPU is warning-only
    if snapshot.cpu_pct >= CPU_WARNING_PCT:
        candidates.append(
            ResourceAlert(
                node_ip=ip,
                layer=HOST,
                metric="cpu_pct",
                value=snapshot.cpu_pct,
                threshold=CPU_WARNING_PCT,
                severity=Severity.WARNING,
                message=f"{ip}: CPU usage at {snapshot.cpu_pct:g}% exceeds {CPU_WARNING_PCT}% threshold (warning)",
            )
        )

    candidates.extend(check_process_absent(snapshot, layer) for layer in PROCESS_LAYERS)
    return [a for a in candidates if a is not None]
