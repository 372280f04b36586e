"""Snapshot stall detection.

Tracks the ml0 snapshot ordinal across cycles. If it has not advanced for
longer than ``snapshot_stall_minutes``, the whole metagraph is restarted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from metagraph_watchdog.models import (
    METAGRAPH_LAYERS,
    DetectionResult,
    HealthSnapshot,
    Layer,
    RestartScope,
)

logger = logging.getLogger(__name__)

CONDITION = "SnapshotsStopped"
ML0_UNREACHABLE = "ML0 unreachable"


@dataclass
class OrdinalState:
    ordinal: int
    timestamp: float


class StallTracker:
    """Remembers, per (node, layer), the last ordinal and when it last changed.

    Owned by the control loop so that state survives across cycles.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._state: dict[tuple[str, str], OrdinalState] = {}
        self._last_key: tuple[str, str] | None = None

    def now(self) -> float:
        return self._clock()

    def update(self, node: str, layer: Layer | str, ordinal: int, timestamp: float | None = None) -> bool:
        """Record an observation. Returns True if this is the first one or the ordinal changed."""
        key = (node, Layer(layer).value)
        ts = self._clock() if timestamp is None else timestamp
        self._last_key = key
        prev = self._state.get(key)
        if prev is None or prev.ordinal != ordinal:
            self._state[key] = OrdinalState(ordinal=ordinal, timestamp=ts)
            return True
        return False

    def stale_seconds(self, node: str, layer: Layer | str, now: float | None = None) -> float | None:
        """Seconds since the ordinal last changed, or None if never observed."""
        state = self._state.get((node, Layer(layer).value))
        if state is None:
            return None
        return (self._clock() if now is None else now) - state.timestamp

    def last_ordinal(self, node: str, layer: Layer | str) -> int | None:
        state = self._state.get((node, Layer(layer).value))
        return state.ordinal if state else None

    def current_stall_seconds(self) -> float:
        """Staleness of the most recently observed (node, layer), 0 if none."""
        if self._last_key is None:
            return 0.0
        return self.stale_seconds(*self._last_key) or 0.0


def detect_snapshots_stopped(
    snapshot: HealthSnapshot,
    config,
    tracker: StallTracker,
    now: float | None = None,
) -> DetectionResult:
    """Report a stall when the ml0 ordinal has been frozen past the threshold.

    The first node with a reachable ml0 and a known ordinal is used.
    """
    logger.info("[SnapshotStall] Checking ML0 snapshot progress...")

    node_ip = None
    ordinal = -1
    for node in snapshot.nodes:
        entry = node.layer(Layer.ML0)
        if entry is not None and entry.reachable and entry.ordinal >= 0:
            node_ip, ordinal = node.ip, entry.ordinal
            break

    if node_ip is None:
        # Unreachable ml0 is a job for the unhealthy-nodes check, not a stall
        logger.info("[SnapshotStall] Cannot reach any ML0 node")
        return DetectionResult.healthy(CONDITION, ML0_UNREACHABLE)

    now = tracker.now() if now is None else now
    previous = tracker.last_ordinal(node_ip, Layer.ML0)
    if tracker.update(node_ip, Layer.ML0, ordinal, now):
        logger.info(
            f"[SnapshotStall] ML0 ordinal {previous if previous is not None else 'N/A'} -> {ordinal} (healthy)"
        )
        return DetectionResult.healthy(CONDITION)

    stale_secs = tracker.stale_seconds(node_ip, Layer.ML0, now) or 0.0
    stale_minutes = stale_secs / 60
    threshold = config.snapshot_stall_minutes

    if stale_minutes > threshold:
        msg = f"ML0 snapshots stalled at ordinal {ordinal} for {stale_minutes:.1f} minutes"
        logger.warning(f"[SnapshotStall] {msg}")
        return DetectionResult(
            detected=True,
            condition=CONDITION,
            details=msg,
            restart_scope=RestartScope.FULL_METAGRAPH,
            affected_nodes=[n.ip for n in config.nodes],
            affected_layers=list(METAGRAPH_LAYERS),
        )

    logger.info(
        f"[SnapshotStall] ML0 ordinal={ordinal} unchanged for {stale_minutes:.1f}m (threshold: {threshold}m)"
    )
    return DetectionResult.healthy(CONDITION)
