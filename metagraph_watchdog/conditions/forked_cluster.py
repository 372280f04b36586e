"""Fork detection.

Compares each node's view of cluster membership on the metagraph layers.
Nodes that disagree with the majority view are in the minority partition;
a layer with a non-empty minority is forked.

Majority ties go to the digest seen first in node order, and a minority
of at least ``len(nodes) - 1`` escalates to a full-layer restart.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from metagraph_watchdog.models import (
    METAGRAPH_LAYERS,
    DetectionResult,
    HealthSnapshot,
    Layer,
    LayerHealth,
    RestartScope,
)

logger = logging.getLogger(__name__)

CONDITION = "ForkedCluster"
EMPTY_DIGEST = "empty"


def hash_cluster_pov(member_ids: list[str]) -> str:
    """Order-independent digest of a cluster membership view."""
    if not member_ids:
        return EMPTY_DIGEST
    encoded = json.dumps(sorted(member_ids), separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()[:12]


def cluster_digest(entry: LayerHealth) -> str:
    """Comparable digest for one node's layer entry.

    Prefers the precomputed hash, then the member list, then the size.
    """
    if entry.cluster_hash:
        return entry.cluster_hash
    if entry.cluster_members is not None:
        return hash_cluster_pov(entry.cluster_members)
    return f"size:{entry.cluster_size}"


@dataclass
class NodePOV:
    """One node's point of view of the cluster on a layer"""
    ip: str
    digest: Optional[str] = None
    cluster_size: int = 0

    @property
    def reachable(self) -> bool:
        return self.digest is not None


@dataclass
class MajorityResult:
    majority_digest: str = ""
    majority_nodes: list[str] = field(default_factory=list)
    minority_nodes: list[str] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)


def find_majority(povs: list[NodePOV]) -> MajorityResult:
    """Partition POVs into majority, minority and unreachable.

    The most frequent digest wins; on a tie the digest encountered first wins.
    """
    reachable = [p for p in povs if p.reachable]
    unreachable = [p.ip for p in povs if not p.reachable]
    if not reachable:
        return MajorityResult(unreachable=unreachable)

    freq: dict[str, int] = {}
    for pov in reachable:
        freq[pov.digest] = freq.get(pov.digest, 0) + 1

    # max() keeps the first maximal key, and dicts preserve insertion order
    majority = max(freq, key=freq.__getitem__)

    return MajorityResult(
        majority_digest=majority,
        majority_nodes=[p.ip for p in reachable if p.digest == majority],
        minority_nodes=[p.ip for p in reachable if p.digest != majority],
        unreachable=unreachable,
    )


def collect_povs(snapshot: HealthSnapshot, layer: Layer, node_ips: list[str]) -> list[NodePOV]:
    """One POV per configured node, in configuration order."""
    povs = []
    for ip in node_ips:
        node = snapshot.node(ip)
        entry = node.layer(layer) if node is not None else None
        if entry is None or not entry.reachable or entry.cluster_error:
            povs.append(NodePOV(ip=ip))
        else:
            povs.append(NodePOV(ip=ip, digest=cluster_digest(entry), cluster_size=entry.cluster_size))
    return povs


def check_layer_fork(snapshot: HealthSnapshot, layer: Layer, node_ips: list[str]) -> MajorityResult:
    povs = collect_povs(snapshot, layer, node_ips)
    result = find_majority(povs)

    if result.minority_nodes:
        logger.warning(
            f"[ForkDetect] {layer.label} FORKED: majority={result.majority_digest}, "
            f"minority nodes: {', '.join(result.minority_nodes)}"
        )
        for pov in povs:
            logger.info(
                f"[ForkDetect]   {pov.ip}: digest={pov.digest or 'unreachable'} members={pov.cluster_size}"
            )
    elif result.unreachable:
        logger.debug(f"[ForkDetect] {layer.label} unreachable nodes: {', '.join(result.unreachable)}")

    return result


def detect_forked_cluster(snapshot: HealthSnapshot, config) -> DetectionResult:
    """Check ml0, cl1, dl1 in order; the first forked layer is reported."""
    logger.info("[ForkDetect] Checking cluster POVs across all nodes...")

    for layer in METAGRAPH_LAYERS:
        result = check_layer_fork(snapshot, layer, config.node_ips)
        if not result.minority_nodes:
            continue

        near_even = len(result.minority_nodes) >= len(config.nodes) - 1
        return DetectionResult(
            detected=True,
            condition=CONDITION,
            details=f"{layer.label} forked, minority nodes: {', '.join(result.minority_nodes)}",
            restart_scope=RestartScope.FULL_LAYER if near_even else RestartScope.INDIVIDUAL_NODE,
            affected_nodes=result.minority_nodes,
            affected_layers=[layer],
        )

    logger.info("[ForkDetect] No forks detected")
    return DetectionResult.healthy(CONDITION)
