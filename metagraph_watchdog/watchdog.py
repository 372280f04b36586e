"""Metagraph watchdog control loop.

One cycle:
    1. Read a health snapshot (Redis cache, or direct polling)
    2. Run the detectors in priority order: fork, stall, unhealthy
    3. Hand the first positive detection to the restart orchestrator
    4. Publish the outcome, update metrics, notify on failures
    5. Optionally evaluate alert rules

Daemon mode repeats the cycle every ``health_check_interval_seconds`` until
the stop event is set; an in-flight cycle always runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from metagraph_watchdog import metrics
from metagraph_watchdog.alerts import AlertEvaluationResult, AlertEvaluator
from metagraph_watchdog.conditions import StallTracker, build_detectors
from metagraph_watchdog.coordination.events import EventPublisher, Severity
from metagraph_watchdog.coordination.health_reader import HealthReader
from metagraph_watchdog.coordination.notify import notify
from metagraph_watchdog.core.ssh import RemoteCommandChannel
from metagraph_watchdog.models import (
    ALL_LAYERS,
    HEALTHY_STATES,
    DetectionResult,
    HealthSnapshot,
    RefusalReason,
    RestartOutcome,
)
from metagraph_watchdog.restart import RestartHistory, RestartOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """What happened during one health-check cycle"""
    snapshot: HealthSnapshot
    results: list[DetectionResult] = field(default_factory=list)
    detection: Optional[DetectionResult] = None
    outcome: Optional[RestartOutcome] = None
    alerts: Optional[AlertEvaluationResult] = None
    detector_errors: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.detection is None


class Watchdog:
    """Owns the stall tracker and restart history for the life of the process."""

    def __init__(
        self,
        config,
        health_reader: HealthReader | None = None,
        remote: RemoteCommandChannel | None = None,
        events: EventPublisher | None = None,
        orchestrator: RestartOrchestrator | None = None,
        tracker: StallTracker | None = None,
        history: RestartHistory | None = None,
        alert_evaluator: AlertEvaluator | None = None,
        notifier: Callable[..., Awaitable[bool]] = notify,
    ):
        self.config = config
        self.tracker = tracker or StallTracker()
        self.history = history if history is not None else RestartHistory()
        self.remote = remote or RemoteCommandChannel(config)
        self.health_reader = health_reader or HealthReader(config)
        self.events = events or EventPublisher(config)
        self.orchestrator = orchestrator or RestartOrchestrator(config, self.remote, self.history)
        self.alert_evaluator = alert_evaluator
        if self.alert_evaluator is None and config.alerts_enabled:
            self.alert_evaluator = AlertEvaluator(config, self.remote)
        self.detectors = build_detectors(self.tracker)
        self._notify = notifier
        self._active_conditions: set[str] = set()
        self.cycles = 0

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_health_check(self) -> CycleReport:
        """Run one full cycle. Detector and restart failures never propagate."""
        started = time.monotonic()
        self.cycles += 1
        logger.info("==================== HEALTH CHECK ====================")

        snapshot = await self.health_reader.get_health_snapshot()
        logger.info(f"[Watchdog] Health data source: {snapshot.source.value} (stale: {snapshot.stale})")
        self._record_snapshot(snapshot)

        report = CycleReport(snapshot=snapshot)
        for name, detect in self.detectors:
            try:
                result = detect(snapshot, self.config)
            except Exception:
                logger.exception(f"[Watchdog] Error checking {name}")
                metrics.DETECTOR_ERRORS.labels(name).inc()
                report.detector_errors.append(name)
                continue

            report.results.append(result)
            if result.detected:
                logger.warning(f"[Watchdog] Condition detected: {name}: {result.details}")
                metrics.CONDITION_DETECTIONS.labels(name, result.restart_scope.value).inc()
                report.detection = result
                break

            if name in self._active_conditions:
                self._active_conditions.discard(name)
                await self.events.publish_resolved(name, f"{name} condition cleared")

        metrics.SNAPSHOT_STALL_SECONDS.set(self.tracker.current_stall_seconds())

        if report.detection is not None:
            self._active_conditions.add(report.detection.condition)
            report.outcome = await self._handle_detection(report.detection)
        else:
            logger.info("[Watchdog] Metagraph is healthy")

        if self.alert_evaluator is not None:
            report.alerts = await self._evaluate_alerts()

        metrics.WATCHDOG_CYCLES.labels("healthy" if report.healthy else "detected").inc()
        metrics.WATCHDOG_CYCLE_DURATION.observe(time.monotonic() - started)
        return report

    def _record_snapshot(self, snapshot: HealthSnapshot) -> None:
        metrics.record_health_source(snapshot.source.value)
        for node in snapshot.nodes:
            for layer in ALL_LAYERS:
                entry = node.layer(layer)
                up = entry is not None and entry.reachable and entry.state in HEALTHY_STATES
                metrics.record_node_layer(node.ip, layer.value, up)

    async def _handle_detection(self, detection: DetectionResult) -> RestartOutcome:
        outcome = await self.orchestrator.execute(detection)

        if outcome.refusal == RefusalReason.NOT_ACTIONABLE:
            logger.info(f"[Watchdog] {detection.condition} is not actionable, no restart")
            return outcome

        await self.events.publish_restart(detection, outcome)

        if outcome.refusal == RefusalReason.RATE_LIMITED:
            await self._notify(
                self.config,
                f"Restart loop detected for {detection.condition}. Manual intervention required.",
            )
        elif outcome.refusal == RefusalReason.COOLDOWN:
            logger.info(f"[Watchdog] Restart for {detection.condition} deferred by cooldown")
        elif outcome.attempted and not outcome.success:
            await self._notify(
                self.config,
                f"{outcome.scope.value} restart for {detection.condition} failed: {outcome.error}",
            )
        else:
            logger.info(f"[Watchdog] Restart performed ({outcome.scope.value})")

        return outcome

    async def _evaluate_alerts(self) -> AlertEvaluationResult | None:
        try:
            result = await self.alert_evaluator.evaluate()
        except Exception:
            logger.exception("[Watchdog] Alert evaluation failed")
            return None

        for alert in result.resource_alerts:
            metrics.ALERTS_RAISED.labels(alert.metric, alert.severity.value).inc()
            await self.events.publish_alert(
                condition=alert.metric,
                severity=alert.severity,
                message=alert.message,
                affected_nodes=[alert.node_ip],
                details={"layer": alert.layer, "value": alert.value, "threshold": alert.threshold},
            )
        for alert in result.cluster_alerts:
            metrics.ALERTS_RAISED.labels(alert.rule_id, alert.severity.value).inc()
            await self.events.publish_alert(
                condition=alert.rule_id,
                severity=alert.severity,
                message=alert.message,
                affected_nodes=[alert.node_ip],
                details=alert.details,
            )

        if result.has_critical:
            critical = [
                a.message
                for a in [*result.resource_alerts, *result.cluster_alerts]
                if a.severity == Severity.CRITICAL
            ]
            await self._notify(self.config, "Critical alerts: " + "; ".join(critical))
        return result

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run_once(self) -> CycleReport:
        await self.events.publish_lifecycle(True)
        try:
            return await self.run_health_check()
        finally:
            await self.close()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run cycles until ``stop_event`` is set."""
        logger.info(
            f"[Watchdog] Starting (interval={self.config.health_check_interval_seconds}s, "
            f"cooldown={self.config.restart_cooldown_minutes}m, "
            f"max_restarts={self.config.max_restarts_per_hour}/hr)"
        )
        await self.events.publish_lifecycle(True)
        try:
            while not stop_event.is_set():
                try:
                    await self.run_health_check()
                except Exception:
                    logger.exception("[Watchdog] Unexpected error in health check")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.health_check_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("[Watchdog] Shutting down...")
            await self.events.publish_lifecycle(False)
            await self.close()
            logger.info("[Watchdog] Shutdown complete")

    async def close(self) -> None:
        await self.health_reader.close()
        await self.events.close()

    def get_status(self) -> dict:
        """Watchdog status for logging and debugging."""
        last = self.history.last()
        return {
            "cycles": self.cycles,
            "restarts_total": len(self.history),
            "last_restart": last.model_dump(mode="json") if last else None,
            "active_conditions": sorted(self._active_conditions),
            "alerts_enabled": self.alert_evaluator is not None,
            "dry_run": self.remote.dry_run,
        }
