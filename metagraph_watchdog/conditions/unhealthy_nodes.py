"""Unhealthy node detection.

A node is unhealthy on a layer when it has no entry for the layer, is
unreachable, or reports a stuck state. gl0 is included because a fully
down global layer leaves the metagraph orphaned.
"""

from __future__ import annotations

import logging

from metagraph_watchdog.models import (
    ALL_LAYERS,
    L1_LAYERS,
    METAGRAPH_LAYERS,
    STUCK_STATES,
    DetectionResult,
    HealthSnapshot,
    Layer,
    LayerHealth,
    NodeState,
    RestartScope,
)

logger = logging.getLogger(__name__)

CONDITION = "UnhealthyNodes"


def is_unhealthy(entry: LayerHealth | None) -> bool:
    if entry is None or not entry.reachable:
        return True
    return entry.state in STUCK_STATES or entry.state == NodeState.UNREACHABLE


def unhealthy_by_layer(snapshot: HealthSnapshot, config) -> dict[Layer, list[str]]:
    """Unhealthy configured node addresses per layer, layers with none omitted.

    A configured node absent from the snapshot counts as unhealthy everywhere.
    """
    result: dict[Layer, list[str]] = {}
    for layer in ALL_LAYERS:
        bad = []
        for ip in config.node_ips:
            node = snapshot.node(ip)
            entry = node.layer(layer) if node is not None else None
            if is_unhealthy(entry):
                bad.append(ip)
                state = entry.state if entry else "missing"
                reachable = entry.reachable if entry else False
                logger.info(f"[UnhealthyNodes] {layer.label} {ip}: state={state} reachable={reachable}")
        if bad:
            result[layer] = bad
    return result


def detect_unhealthy_nodes(snapshot: HealthSnapshot, config) -> DetectionResult:
    logger.info("[UnhealthyNodes] Checking node health across all layers...")

    by_layer = unhealthy_by_layer(snapshot, config)
    if not by_layer:
        logger.info("[UnhealthyNodes] All nodes healthy")
        return DetectionResult.healthy(CONDITION)

    total = len(config.nodes)
    all_ips = [n.ip for n in config.nodes]

    def fully_down(layer: Layer) -> bool:
        return len(by_layer.get(layer, [])) == total

    if fully_down(Layer.GL0):
        return DetectionResult(
            detected=True,
            condition=CONDITION,
            details=f"GL0 fully down, all {total} nodes unhealthy (metagraph orphaned)",
            restart_scope=RestartScope.FULL_METAGRAPH,
            affected_nodes=all_ips,
            affected_layers=list(ALL_LAYERS),
        )

    if fully_down(Layer.ML0):
        return DetectionResult(
            detected=True,
            condition=CONDITION,
            details=f"ML0 fully down, all {total} nodes unhealthy",
            restart_scope=RestartScope.FULL_METAGRAPH,
            affected_nodes=all_ips,
            affected_layers=list(METAGRAPH_LAYERS),
        )

    for layer in L1_LAYERS:
        if fully_down(layer):
            return DetectionResult(
                detected=True,
                condition=CONDITION,
                details=f"{layer.label} fully down, all nodes unhealthy",
                restart_scope=RestartScope.FULL_LAYER,
                affected_nodes=all_ips,
                affected_layers=[layer],
            )

    # dict.fromkeys keeps first-seen order
    affected_ips = list(dict.fromkeys(ip for ips in by_layer.values() for ip in ips))
    summary = "; ".join(f"{layer.label}: [{', '.join(ips)}]" for layer, ips in by_layer.items())
    return DetectionResult(
        detected=True,
        condition=CONDITION,
        details=f"Individual unhealthy nodes: {summary}",
        restart_scope=RestartScope.INDIVIDUAL_NODE,
        affected_nodes=affected_ips,
        affected_layers=list(by_layer),
    )
