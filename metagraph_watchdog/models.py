"""
Pydantic Models for Metagraph Health State
Node API payloads, health snapshots, detection results and restart records.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum
from datetime import datetime


class Layer(str, Enum):
    """Cluster layer enumeration"""
    GL0 = "gl0"
    ML0 = "ml0"
    CL1 = "cl1"
    DL1 = "dl1"

    @property
    def label(self) -> str:
        return self.value.upper()


ALL_LAYERS = (Layer.GL0, Layer.ML0, Layer.CL1, Layer.DL1)
METAGRAPH_LAYERS = (Layer.ML0, Layer.CL1, Layer.DL1)
L1_LAYERS = (Layer.CL1, Layer.DL1)


class NodeState:
    """Node states reported by /node/info"""
    READY = "Ready"
    WAITING_FOR_READY = "WaitingForReady"
    WAITING_FOR_DOWNLOAD = "WaitingForDownload"
    DOWNLOAD_IN_PROGRESS = "DownloadInProgress"
    LEAVING = "Leaving"
    OFFLINE = "Offline"
    UNREACHABLE = "Unreachable"


HEALTHY_STATES = frozenset({NodeState.READY, NodeState.WAITING_FOR_READY})
STUCK_STATES = frozenset({
    NodeState.WAITING_FOR_DOWNLOAD,
    NodeState.LEAVING,
    NodeState.OFFLINE,
    NodeState.DOWNLOAD_IN_PROGRESS,
})


class RestartScope(str, Enum):
    """Blast radius of a remedial action"""
    NONE = "none"
    INDIVIDUAL_NODE = "individual-node"
    FULL_LAYER = "full-layer"
    FULL_METAGRAPH = "full-metagraph"


class HealthSource(str, Enum):
    """Where a health snapshot came from"""
    CACHE = "cache"
    DIRECT = "direct"


class RefusalReason(str, Enum):
    """Why the orchestrator declined to act"""
    NOT_ACTIONABLE = "not-actionable"
    RATE_LIMITED = "rate-limited"
    COOLDOWN = "cooldown"


class NodeIdentity(BaseModel):
    """Configured cluster node"""
    name: str
    ip: str

    class Config:
        frozen = True


class NodeInfo(BaseModel):
    """Payload of GET /node/info"""
    state: str
    id: str
    host: Optional[str] = None
    public_port: Optional[int] = Field(default=None, alias="publicPort")
    p2p_port: Optional[int] = Field(default=None, alias="p2pPort")
    session: Optional[str] = None

    class Config:
        populate_by_name = True


class ClusterMember(BaseModel):
    """One entry of GET /cluster/info"""
    id: str
    state: Optional[str] = None
    ip: Optional[str] = None
    public_port: Optional[int] = Field(default=None, alias="publicPort")
    p2p_port: Optional[int] = Field(default=None, alias="p2pPort")
    session: Optional[str] = None

    class Config:
        populate_by_name = True


class NodeHealth(BaseModel):
    """Result of directly polling a single node+layer"""
    node_ip: str
    layer: Layer
    reachable: bool
    state: str
    # None when /cluster/info could not be fetched
    cluster: Optional[List[ClusterMember]] = None
    ordinal: int = -1


class LayerHealth(BaseModel):
    """Observed health of one layer on one node"""
    layer: Layer
    state: str
    ordinal: int = -1
    reachable: bool
    cluster_size: int = Field(default=0, alias="clusterSize")
    cluster_hash: Optional[str] = Field(default=None, alias="clusterHash")
    # Member ids as seen by the node; only filled in by direct polling
    cluster_members: Optional[List[str]] = None
    # Node answered but its membership view could not be read
    cluster_error: bool = False

    class Config:
        frozen = True
        populate_by_name = True


class NodeHealthData(BaseModel):
    """Health data for a single node across all layers"""
    ip: str
    name: str
    layers: List[LayerHealth] = Field(default_factory=list)

    class Config:
        frozen = True

    def layer(self, layer: Layer) -> Optional[LayerHealth]:
        """Return the entry for ``layer``, or None if the node did not report it"""
        for entry in self.layers:
            if entry.layer == layer:
                return entry
        return None


class HealthSnapshot(BaseModel):
    """Point-in-time view of every node across every layer"""
    timestamp: datetime
    nodes: List[NodeHealthData]
    stale: bool = False
    source: HealthSource

    class Config:
        frozen = True

    def node(self, ip: str) -> Optional[NodeHealthData]:
        for node in self.nodes:
            if node.ip == ip:
                return node
        return None


class DetectionResult(BaseModel):
    """Outcome of a single condition detector"""
    detected: bool
    condition: str
    details: str = ""
    restart_scope: RestartScope = RestartScope.NONE
    affected_nodes: List[str] = Field(default_factory=list)
    affected_layers: List[Layer] = Field(default_factory=list)

    class Config:
        frozen = True

    @classmethod
    def healthy(cls, condition: str, details: str = "") -> "DetectionResult":
        return cls(detected=False, condition=condition, details=details)

    @property
    def actionable(self) -> bool:
        return self.detected and self.restart_scope != RestartScope.NONE


class RestartEvent(BaseModel):
    """Record of one restart attempt, appended to the restart history"""
    timestamp: datetime
    scope: RestartScope
    condition: str
    layers: List[Layer] = Field(default_factory=list)
    nodes: List[str] = Field(default_factory=list)
    success: bool
    error: Optional[str] = None

    class Config:
        frozen = True


class RestartOutcome(BaseModel):
    """What the orchestrator did with a detection result"""
    attempted: bool
    success: bool = False
    scope: RestartScope
    condition: str
    refusal: Optional[RefusalReason] = None
    error: Optional[str] = None
    event: Optional[RestartEvent] = None

    class Config:
        frozen = True

    @property
    def refused(self) -> bool:
        return self.refusal is not None
