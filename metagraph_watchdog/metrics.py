"""Prometheus metrics for the metagraph watchdog.

Module-level collectors so that the control loop, detectors and the
restart orchestrator can record telemetry without passing metric objects
around. Exposed over HTTP only when a metrics port is configured.
"""

from __future__ import annotations

import logging
from typing import Final

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


WATCHDOG_CYCLES: Final[Counter] = Counter(
    "metagraph_watchdog_cycles_total",
    "Total health-check cycles run, labeled by result.",
    labelnames=("result",),
)

WATCHDOG_CYCLE_DURATION: Final[Histogram] = Histogram(
    "metagraph_watchdog_cycle_duration_seconds",
    "Wall time of a single health-check cycle in seconds.",
    # Restart procedures can keep a cycle busy for several minutes.
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

CONDITION_DETECTIONS: Final[Counter] = Counter(
    "metagraph_watchdog_condition_detections_total",
    "Positive condition detections, labeled by condition and restart scope.",
    labelnames=("condition", "scope"),
)

DETECTOR_ERRORS: Final[Counter] = Counter(
    "metagraph_watchdog_detector_errors_total",
    "Detector invocations that raised, labeled by condition.",
    labelnames=("condition",),
)

RESTART_ATTEMPTS: Final[Counter] = Counter(
    "metagraph_watchdog_restart_attempts_total",
    "Restart attempts, labeled by scope and outcome (success/failure).",
    labelnames=("scope", "outcome"),
)

RESTART_REFUSALS: Final[Counter] = Counter(
    "metagraph_watchdog_restart_refusals_total",
    "Restarts declined by the safety rules, labeled by reason.",
    labelnames=("reason",),
)

RESTART_DURATION: Final[Histogram] = Histogram(
    "metagraph_watchdog_restart_duration_seconds",
    "Duration of restart procedures in seconds, labeled by scope.",
    labelnames=("scope",),
    buckets=(10.0, 30.0, 60.0, 120.0, 180.0, 300.0, 600.0, 900.0),
)

HEALTH_SOURCE: Final[Gauge] = Gauge(
    "metagraph_watchdog_health_source",
    "1 for the health source used by the latest cycle, 0 otherwise.",
    labelnames=("source",),
)

SNAPSHOT_STALL_SECONDS: Final[Gauge] = Gauge(
    "metagraph_watchdog_snapshot_stall_seconds",
    "Seconds since the tracked ml0 ordinal last advanced.",
)

NODE_LAYER_UP: Final[Gauge] = Gauge(
    "metagraph_watchdog_node_layer_up",
    "1 if the node layer is reachable and in a healthy state, 0 otherwise.",
    labelnames=("node", "layer"),
)

ALERTS_RAISED: Final[Counter] = Counter(
    "metagraph_watchdog_alerts_total",
    "Alerts raised by the alert rules, labeled by rule and severity.",
    labelnames=("rule", "severity"),
)


def start_metrics_server(port: int) -> bool:
    """Expose metrics on ``port``. Returns False when disabled or the bind fails."""
    if port <= 0:
        return False
    try:
        start_http_server(port)
    except OSError as e:
        logger.warning(f"[Metrics] Could not start metrics server on port {port}: {e}")
        return False
    logger.info(f"[Metrics] Serving Prometheus metrics on :{port}")
    return True


def record_health_source(source: str) -> None:
    for name in ("cache", "direct"):
        HEALTH_SOURCE.labels(name).set(1 if name == source else 0)


def record_node_layer(node: str, layer: str, up: bool) -> None:
    NODE_LAYER_UP.labels(node, layer).set(1 if up else 0)


def record_restart(scope: str, success: bool, duration_seconds: float) -> None:
    """Record metrics for a completed restart attempt.

    Args:
        scope: Restart scope value (e.g. 'full-layer')
        success: Whether the procedure completed without error
        duration_seconds: Wall time of the procedure
    """
    RESTART_ATTEMPTS.labels(scope, "success" if success else "failure").inc()
    RESTART_DURATION.labels(scope).observe(duration_seconds)
