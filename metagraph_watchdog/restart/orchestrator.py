"""Restart orchestrator.

Executes the restart procedure matching a detection result:

- individual-node: stop, start and rejoin each affected node to a healthy
  reference node on the same layer
- full-layer: stop every node on the layer, start node 0 as genesis, then
  start and join the others one at a time
- full-metagraph: stop dl1, cl1 and ml0, bring ml0 up as a full layer, then
  restart cl1 and dl1 concurrently

Every attempt is gated by a cooldown and an hourly rate limit evaluated
against the shared RestartHistory, and every attempt appends exactly one
RestartEvent. ``execute`` never raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from metagraph_watchdog import metrics
from metagraph_watchdog.core.node_api import get_node_info
from metagraph_watchdog.errors import GenesisNotReadyError, RestartError, WatchdogError
from metagraph_watchdog.models import (
    DetectionResult,
    Layer,
    NodeInfo,
    NodeState,
    RefusalReason,
    RestartEvent,
    RestartOutcome,
    RestartScope,
)
from metagraph_watchdog.restart.history import RestartHistory

logger = logging.getLogger(__name__)

READY_POLL_INTERVAL = 5.0
READY_TIMEOUT = 120.0
INDIVIDUAL_READY_TIMEOUT = 90.0
STOP_SETTLE_SECONDS = 3.0
LAYER_STOP_SETTLE_SECONDS = 5.0
JOIN_DELAY_SECONDS = 10.0
RATE_LIMIT_WINDOW = timedelta(hours=1)

NodeInfoFetch = Callable[[str, int], Awaitable[Optional[NodeInfo]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RestartOrchestrator:
    """Runs restart procedures over the remote command channel."""

    def __init__(
        self,
        config,
        remote,
        history: RestartHistory | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        node_info_fetch: NodeInfoFetch | None = None,
    ):
        self.config = config
        self.remote = remote
        self.history = history if history is not None else RestartHistory()
        self._clock = clock
        self._sleep = sleep
        self._node_info_fetch = node_info_fetch or self._default_node_info

    async def _default_node_info(self, ip: str, port: int) -> NodeInfo | None:
        return await get_node_info(ip, port, self.config.http_timeout_seconds)

    @property
    def dry_run(self) -> bool:
        return bool(getattr(self.remote, "dry_run", False))

    async def _pause(self, seconds: float) -> None:
        if not self.dry_run:
            await self._sleep(seconds)

    # =========================================================================
    # Entry point
    # =========================================================================

    def check_preconditions(self, result: DetectionResult, now: datetime) -> RefusalReason | None:
        """Return why ``result`` must not be acted on, or None if a restart may proceed."""
        if not result.actionable:
            return RefusalReason.NOT_ACTIONABLE

        recent = self.history.recent_count(now, RATE_LIMIT_WINDOW)
        if recent >= self.config.max_restarts_per_hour:
            logger.warning(
                f"[Restart] Restart loop detected ({recent} restarts in 1h). "
                f"Manual intervention required."
            )
            return RefusalReason.RATE_LIMITED

        last = self.history.last()
        if last is not None:
            since = now - last.timestamp
            if since < timedelta(minutes=self.config.restart_cooldown_minutes):
                logger.warning(
                    f"[Restart] Cooldown active ({since.total_seconds() / 60:.1f}m since last restart, "
                    f"cooldown {self.config.restart_cooldown_minutes}m)"
                )
                return RefusalReason.COOLDOWN

        return None

    async def execute(self, result: DetectionResult) -> RestartOutcome:
        """Act on a detection result, subject to the safety rules."""
        scope = result.restart_scope
        now = self._clock()

        refusal = self.check_preconditions(result, now)
        if refusal is not None:
            if refusal != RefusalReason.NOT_ACTIONABLE:
                metrics.RESTART_REFUSALS.labels(refusal.value).inc()
            return RestartOutcome(
                attempted=False,
                success=False,
                scope=scope,
                condition=result.condition,
                refusal=refusal,
            )

        logger.info(f"[Restart] Initiating {scope.value} restart for {result.condition}: {result.details}")
        started = time.monotonic()
        error: str | None = None

        try:
            await self._run_procedure(result)
        except WatchdogError as e:
            error = str(e)
            logger.error(f"[Restart] Failed: {error}")
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception(f"[Restart] Failed with unexpected error: {error}")

        success = error is None
        event = RestartEvent(
            timestamp=now,
            scope=scope,
            condition=result.condition,
            layers=result.affected_layers,
            nodes=result.affected_nodes,
            success=success,
            error=error,
        )
        self.history.append(event)
        metrics.record_restart(scope.value, success, time.monotonic() - started)

        if success:
            logger.info(f"[Restart] Restart complete ({scope.value})")

        return RestartOutcome(
            attempted=True,
            success=success,
            scope=scope,
            condition=result.condition,
            error=error,
            event=event,
        )

    async def _run_procedure(self, result: DetectionResult) -> None:
        scope = result.restart_scope
        if scope == RestartScope.INDIVIDUAL_NODE:
            await self.restart_individual_nodes(result.affected_nodes, result.affected_layers)
        elif scope == RestartScope.FULL_LAYER:
            if Layer.ML0 in result.affected_layers:
                # cl1/dl1 are restarted as part of the metagraph restart
                await self.restart_full_metagraph()
                return
            for layer in result.affected_layers:
                await self.restart_full_layer(layer)
        elif scope == RestartScope.FULL_METAGRAPH:
            await self.restart_full_metagraph()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _container(self, layer: Layer, ip: str) -> str:
        index = self.config.node_index(ip)
        if index < 0:
            raise RestartError(f"Node {ip} is not configured", layer=layer.value, node_ip=ip)
        return self.config.container_name(layer, index)

    async def wait_for_ready(self, ip: str, layer: Layer, timeout: float = READY_TIMEOUT) -> bool:
        """Poll /node/info until the node reports Ready, at most ``timeout`` seconds."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would wait for {layer.label} on {ip} to become Ready")
            return True

        port = self.config.ports[layer]
        polls = max(1, int(timeout // READY_POLL_INTERVAL))
        for _ in range(polls):
            info = await self._node_info_fetch(ip, port)
            if info is not None and info.state == NodeState.READY:
                return True
            await self._sleep(READY_POLL_INTERVAL)
        return False

    async def _join(self, layer: Layer, ip: str, container: str, peer_id: str, peer_ip: str) -> None:
        logger.info(f"[Restart] Joining {ip} {layer.label} to cluster (peer={peer_ip})")
        await self.remote.join_cluster(
            ip,
            container,
            self.config.cli_ports[layer],
            peer_id,
            peer_ip,
            self.config.p2p_ports[layer],
        )

    async def find_reference_node(self, layer: Layer, excluded: list[str]) -> tuple[str, NodeInfo] | None:
        """First configured node outside ``excluded`` whose /node/info responds."""
        port = self.config.ports[layer]
        for node in self.config.nodes:
            if node.ip in excluded:
                continue
            info = await self._node_info_fetch(node.ip, port)
            if info is not None:
                return node.ip, info
            logger.info(f"[Restart] Reference candidate {node.ip} {layer.label} not responding")
        return None

    # =========================================================================
    # Procedures
    # =========================================================================

    async def restart_individual_nodes(self, nodes: list[str], layers: list[Layer]) -> None:
        for layer in layers:
            reference = await self.find_reference_node(layer, nodes)
            if reference is None:
                logger.warning(f"[Restart] No healthy reference node for {layer.label}, escalating to full-layer")
                if layer == Layer.ML0:
                    await self.restart_full_metagraph()
                    return
                await self.restart_full_layer(layer)
                continue

            ref_ip, ref_info = reference
            for ip in nodes:
                await self._restart_node(layer, ip, ref_ip, ref_info.id)

    async def _restart_node(self, layer: Layer, ip: str, ref_ip: str, ref_id: str) -> None:
        container = self._container(layer, ip)
        logger.info(f"[Restart] Restarting {container} on {ip}")

        await self.remote.kill_layer_process(ip, container)
        await self._pause(STOP_SETTLE_SECONDS)
        await self.remote.docker_control(ip, "start", container)
        await self._pause(JOIN_DELAY_SECONDS)
        await self._join(layer, ip, container, ref_id, ref_ip)

        if not await self.wait_for_ready(ip, layer, INDIVIDUAL_READY_TIMEOUT):
            logger.warning(f"[Restart] {container} on {ip} not Ready after {INDIVIDUAL_READY_TIMEOUT:.0f}s")

    async def restart_full_layer(self, layer: Layer) -> None:
        """Stop every node on ``layer`` and rebuild the cluster from node 0."""
        if layer == Layer.ML0:
            logger.info("[Restart] ML0 down, escalating to full metagraph restart")
            await self.restart_full_metagraph()
            return

        logger.info(f"[Restart] Full {layer.label} layer restart")
        await asyncio.gather(
            *(
                self.remote.kill_layer_process(node.ip, self.config.container_name(layer, i))
                for i, node in enumerate(self.config.nodes)
            )
        )
        await self._pause(LAYER_STOP_SETTLE_SECONDS)
        await self._start_layer(layer)
        logger.info(f"[Restart] {layer.label} layer restart complete")

    async def _start_layer(self, layer: Layer) -> None:
        """Start genesis, then start and join each other node in order."""
        genesis = self.config.nodes[0]
        genesis_container = self.config.container_name(layer, 0)
        port = self.config.ports[layer]

        await self.remote.docker_control(genesis.ip, "start", genesis_container)
        if not await self.wait_for_ready(genesis.ip, layer, READY_TIMEOUT):
            raise GenesisNotReadyError(
                f"{layer.label} genesis on {genesis.ip} did not become Ready",
                layer=layer.value,
                node_ip=genesis.ip,
            )

        genesis_info = await self._node_info_fetch(genesis.ip, port)
        if genesis_info is None and not self.dry_run:
            raise RestartError(
                f"Cannot get genesis info for {layer.label}", layer=layer.value, node_ip=genesis.ip
            )
        genesis_id = genesis_info.id if genesis_info is not None else "<genesis-id>"

        for i, node in enumerate(self.config.nodes[1:], start=1):
            container = self.config.container_name(layer, i)
            await self.remote.docker_control(node.ip, "start", container)
            await self._pause(JOIN_DELAY_SECONDS)
            await self._join(layer, node.ip, container, genesis_id, genesis.ip)

        for node in self.config.nodes:
            if not await self.wait_for_ready(node.ip, layer, READY_TIMEOUT):
                logger.warning(f"[Restart] {layer.label} on {node.ip} not Ready after {READY_TIMEOUT:.0f}s")

    async def restart_full_metagraph(self) -> None:
        """Stop dl1, cl1, ml0; rebuild ml0; then rebuild cl1 and dl1 concurrently.

        gl0 is never touched.
        """
        logger.info("[Restart] === Full Metagraph Restart ===")

        for layer in (Layer.DL1, Layer.CL1, Layer.ML0):
            results = await asyncio.gather(
                *(
                    self.remote.kill_layer_process(node.ip, self.config.container_name(layer, i))
                    for i, node in enumerate(self.config.nodes)
                ),
                return_exceptions=True,
            )
            for node, res in zip(self.config.nodes, results):
                if isinstance(res, Exception):
                    logger.debug(f"[Restart] Ignoring stop failure for {layer.label} on {node.ip}: {res}")

        await self._pause(LAYER_STOP_SETTLE_SECONDS)

        logger.info("[Restart] Starting ML0...")
        await self._start_layer(Layer.ML0)
        logger.info("[Restart] ML0 cluster ready")

        l1_layers = (Layer.CL1, Layer.DL1)
        results = await asyncio.gather(
            *(self.restart_full_layer(layer) for layer in l1_layers),
            return_exceptions=True,
        )
        for layer, res in zip(l1_layers, results):
            if isinstance(res, Exception):
                logger.error(f"[Restart] {layer.label} restart failed: {res}")

        logger.info("[Restart] === Full Metagraph Restart Complete ===")
