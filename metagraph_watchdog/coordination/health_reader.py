"""Health data reader.

Reads the latest cluster health from the Redis cache written by the
services monitor, and falls back to polling the nodes directly when the
cache is unconfigured, unavailable, empty, unparseable or stale.

Primary data flow:
    Services Monitor -> Redis -> HealthReader

Fallback:
    Nodes -> /node/info, /cluster/info, /snapshots/latest -> HealthReader
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError

from metagraph_watchdog.core.node_api import check_layer_health
from metagraph_watchdog.errors import CacheBackendError
from metagraph_watchdog.models import (
    ALL_LAYERS,
    HealthSnapshot,
    HealthSource,
    Layer,
    LayerHealth,
    NodeHealthData,
    NodeState,
)

logger = logging.getLogger(__name__)

# Redis key where the services monitor writes the latest health data
HEALTH_KEY = "monitor:health:latest"

_KNOWN_LAYERS = {layer.value for layer in ALL_LAYERS}


class _CachedLayer(BaseModel):
    layer: str
    state: str
    ordinal: int = -1
    reachable: bool
    cluster_size: Optional[int] = Field(default=None, alias="clusterSize")
    cluster_hash: Optional[str] = Field(default=None, alias="clusterHash")


class _CachedNode(BaseModel):
    ip: str
    name: str
    layers: List[_CachedLayer] = Field(default_factory=list)


class _CachedPayload(BaseModel):
    timestamp: datetime
    nodes: List[_CachedNode]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_cache_payload(raw: str) -> HealthSnapshot:
    """Turn the cached JSON document into a snapshot.

    Layer entries with an unknown layer name are skipped.

    Raises:
        CacheBackendError: if the document is not valid JSON or does not
            have the expected shape.
    """
    try:
        payload = _CachedPayload.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise CacheBackendError(f"Unparseable health payload: {e}") from e

    timestamp = payload.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    nodes = []
    for node in payload.nodes:
        layers = [
            LayerHealth(
                layer=Layer(entry.layer),
                state=entry.state,
                ordinal=entry.ordinal,
                reachable=entry.reachable,
                cluster_size=entry.cluster_size or 0,
                cluster_hash=entry.cluster_hash,
            )
            for entry in node.layers
            if entry.layer in _KNOWN_LAYERS
        ]
        nodes.append(NodeHealthData(ip=node.ip, name=node.name, layers=layers))

    return HealthSnapshot(timestamp=timestamp, nodes=nodes, stale=False, source=HealthSource.CACHE)


class HealthReader:
    """Produces a HealthSnapshot each cycle, preferring the Redis cache.

    ``get_health_snapshot`` never raises: every failure degrades to the
    next source, and a total failure yields a snapshot flagged stale.
    """

    def __init__(
        self,
        config,
        redis_client=None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self._clock = clock
        self._now = now
        self._redis = redis_client
        self._backend_available = bool(config.redis_url or redis_client is not None)
        self._last_failure: float | None = None

        if self._redis is None and config.redis_url:
            self._redis = aioredis.from_url(
                config.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=3,
            )
        elif self._redis is None:
            logger.info("[HealthReader] No Redis URL configured, using direct HTTP polling")

    @property
    def backend_available(self) -> bool:
        return self._backend_available

    def _mark_unavailable(self, error: Exception) -> None:
        if self._backend_available:
            logger.warning(f"[HealthReader] Redis error: {error}")
        self._backend_available = False
        self._last_failure = self._clock()

    async def _cache_usable(self) -> bool:
        if self._redis is None:
            return False
        if self._backend_available:
            return True
        if self._last_failure is not None and self._clock() - self._last_failure < self.config.redis_retry_seconds:
            return False

        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            logger.debug(f"[HealthReader] Redis still unavailable: {e}")
            self._last_failure = self._clock()
            return False

        logger.info("[HealthReader] Redis reconnected")
        self._backend_available = True
        return True

    async def get_health_snapshot(self) -> HealthSnapshot:
        """Return the freshest health snapshot available."""
        stale_cache: HealthSnapshot | None = None

        if await self._cache_usable():
            try:
                raw = await self._redis.get(HEALTH_KEY)
            except (RedisError, OSError) as e:
                self._mark_unavailable(e)
                logger.info("[HealthReader] Redis read failed, falling back to direct checks")
                raw = None
            else:
                if raw is None:
                    logger.info("[HealthReader] No health data in Redis, falling back to direct checks")

            if raw is not None:
                try:
                    snapshot = parse_cache_payload(raw)
                except CacheBackendError as e:
                    logger.warning(f"[HealthReader] {e.message}, falling back to direct checks")
                else:
                    age = (self._now() - snapshot.timestamp).total_seconds()
                    if age < self.config.health_data_stale_seconds:
                        logger.debug(f"[HealthReader] Using cached health data ({age:.0f}s old)")
                        return snapshot
                    logger.info(
                        f"[HealthReader] Redis data stale ({age:.0f}s old), falling back to direct checks"
                    )
                    stale_cache = snapshot.model_copy(update={"stale": True})

        try:
            return await self._poll_directly()
        except Exception:
            logger.exception("[HealthReader] Direct polling failed")
            if stale_cache is not None:
                return stale_cache
            return self._unreachable_snapshot()

    async def _poll_directly(self) -> HealthSnapshot:
        logger.info("[HealthReader] Using direct HTTP polling (fallback mode)")
        layers_by_ip: dict[str, list[LayerHealth]] = {n.ip: [] for n in self.config.nodes}

        per_layer = await asyncio.gather(
            *(check_layer_health(self.config, layer) for layer in ALL_LAYERS)
        )
        for healths in per_layer:
            for health in healths:
                if health.node_ip not in layers_by_ip:
                    continue
                members = health.cluster if health.reachable else None
                layers_by_ip[health.node_ip].append(
                    LayerHealth(
                        layer=health.layer,
                        state=health.state,
                        ordinal=health.ordinal,
                        reachable=health.reachable,
                        cluster_size=len(members or []),
                        cluster_members=[m.id for m in members] if members is not None else None,
                        cluster_error=health.reachable and health.cluster is None,
                    )
                )

        return HealthSnapshot(
            timestamp=self._now(),
            nodes=[
                NodeHealthData(ip=n.ip, name=n.name, layers=layers_by_ip[n.ip])
                for n in self.config.nodes
            ],
            stale=False,
            source=HealthSource.DIRECT,
        )

    def _unreachable_snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            timestamp=self._now(),
            nodes=[
                NodeHealthData(
                    ip=n.ip,
                    name=n.name,
                    layers=[
                        LayerHealth(layer=layer, state=NodeState.UNREACHABLE, reachable=False)
                        for layer in ALL_LAYERS
                    ],
                )
                for n in self.config.nodes
            ],
            stale=True,
            source=HealthSource.DIRECT,
        )

    async def close(self) -> None:
        """Release the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
