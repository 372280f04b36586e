"""Condition detectors.

Each detector has the signature ``detect(snapshot, config) -> DetectionResult``
and is evaluated in the fixed order returned by ``build_detectors``.
"""

from __future__ import annotations

from functools import partial
from typing import Callable

from metagraph_watchdog.conditions.forked_cluster import detect_forked_cluster
from metagraph_watchdog.conditions.snapshots_stopped import StallTracker, detect_snapshots_stopped
from metagraph_watchdog.conditions.unhealthy_nodes import detect_unhealthy_nodes
from metagraph_watchdog.models import DetectionResult, HealthSnapshot

Detector = Callable[[HealthSnapshot, object], DetectionResult]


def build_detectors(tracker: StallTracker) -> list[tuple[str, Detector]]:
    """Detectors in priority order: fork, stall, unhealthy."""
    return [
        ("ForkedCluster", detect_forked_cluster),
        ("SnapshotsStopped", partial(detect_snapshots_stopped, tracker=tracker)),
        ("UnhealthyNodes", detect_unhealthy_nodes),
    ]


__all__ = [
    "Detector",
    "StallTracker",
    "build_detectors",
    "detect_forked_cluster",
    "detect_snapshots_stopped",
    "detect_unhealthy_nodes",
]
