"""HTTP client for the node public API.

Fetches /node/info, /cluster/info and the latest snapshot ordinal from a
node on a given layer. Every call has a short timeout and degrades to
"unreachable" rather than raising.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from pydantic import ValidationError

from metagraph_watchdog.errors import NodeQueryError
from metagraph_watchdog.models import (
    ClusterMember,
    Layer,
    NodeHealth,
    NodeInfo,
    NodeState,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


async def _request_json(url: str, timeout: float) -> Any:
    """GET ``url`` and decode the JSON body. Raises NodeQueryError on any failure."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise NodeQueryError(f"HTTP {resp.status} from {url}")
                return await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise NodeQueryError(f"Request to {url} failed: {e}") from e


async def fetch_json(url: str, timeout: float = DEFAULT_TIMEOUT) -> Any | None:
    """GET ``url`` returning decoded JSON, or None if the node did not answer."""
    try:
        return await _request_json(url, timeout)
    except NodeQueryError as e:
        logger.debug(f"[NodeAPI] {e}")
        return None


async def get_node_info(ip: str, port: int, timeout: float = DEFAULT_TIMEOUT) -> NodeInfo | None:
    data = await fetch_json(f"http://{ip}:{port}/node/info", timeout)
    if not isinstance(data, dict):
        return None
    try:
        return NodeInfo.model_validate(data)
    except ValidationError as e:
        logger.debug(f"[NodeAPI] Malformed /node/info from {ip}:{port}: {e}")
        return None


async def get_cluster_info(
    ip: str, port: int, timeout: float = DEFAULT_TIMEOUT
) -> list[ClusterMember] | None:
    """Cluster members as seen by the node, or None if the fetch failed."""
    data = await fetch_json(f"http://{ip}:{port}/cluster/info", timeout)
    if not isinstance(data, list):
        return None
    members = []
    for entry in data:
        try:
            members.append(ClusterMember.model_validate(entry))
        except ValidationError:
            continue
    return members


async def get_latest_ordinal(
    ip: str, port: int, layer: Layer, timeout: float = DEFAULT_TIMEOUT
) -> int:
    """Latest snapshot ordinal seen by the node, or -1 if unknown.

    gl0 serves global snapshots; the metagraph layers serve their own.
    """
    endpoint = "/global-snapshots/latest" if layer == Layer.GL0 else "/snapshots/latest"
    data = await fetch_json(f"http://{ip}:{port}{endpoint}", timeout)
    if not isinstance(data, dict):
        return -1

    value = data.get("value")
    if isinstance(value, dict) and isinstance(value.get("ordinal"), int):
        return value["ordinal"]
    if isinstance(data.get("ordinal"), int):
        return data["ordinal"]
    return -1


async def check_node_health(
    ip: str, layer: Layer, port: int, timeout: float = DEFAULT_TIMEOUT
) -> NodeHealth:
    """Poll node info, cluster view and ordinal for one node+layer concurrently."""
    info, cluster, ordinal = await asyncio.gather(
        get_node_info(ip, port, timeout),
        get_cluster_info(ip, port, timeout),
        get_latest_ordinal(ip, port, layer, timeout),
    )
    return NodeHealth(
        node_ip=ip,
        layer=layer,
        reachable=info is not None,
        state=info.state if info is not None else NodeState.UNREACHABLE,
        cluster=cluster,
        ordinal=ordinal,
    )


async def check_layer_health(config, layer: Layer) -> list[NodeHealth]:
    """Poll every configured node on ``layer``."""
    port = config.ports[layer]
    return list(
        await asyncio.gather(
            *(
                check_node_health(node.ip, layer, port, config.http_timeout_seconds)
                for node in config.nodes
            )
        )
    )
