"""Monitoring event publisher.

Posts restart, alert, resolution and lifecycle events to the monitor
service for the status page. Publishing is fire-and-forget: failures are
logged and never propagated to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, Field

from metagraph_watchdog.models import DetectionResult, Layer, RestartOutcome, RestartScope

logger = logging.getLogger(__name__)

EVENTS_PATH = "/api/monitoring/events"


class MonitoringEventType(str, Enum):
    RESTART = "RESTART"
    ALERT = "ALERT"
    RESOLVED = "RESOLVED"
    MONITORING_START = "MONITORING_START"
    MONITORING_STOP = "MONITORING_STOP"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class MonitoringEvent(BaseModel):
    """Event body as accepted by the monitor service"""
    event_type: MonitoringEventType = Field(alias="eventType")
    condition: Optional[str] = None
    severity: Optional[Severity] = None
    scope: Optional[RestartScope] = None
    affected_nodes: Optional[List[str]] = Field(default=None, alias="affectedNodes")
    affected_layers: Optional[List[Layer]] = Field(default=None, alias="affectedLayers")
    success: Optional[bool] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventPublisher:
    """POSTs MonitoringEvents to ``{monitor_url}/api/monitoring/events``."""

    def __init__(self, config, timeout: float = 10.0):
        self.monitor_url = config.monitor_url.rstrip("/") if config.monitor_url else None
        self.api_key = config.monitor_api_key
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, url: str, payload: dict[str, Any]) -> int:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        async with self._session.post(url, json=payload, headers=self._headers()) as resp:
            return resp.status

    async def publish(self, event: MonitoringEvent) -> bool:
        """Publish ``event``. Returns True if the monitor accepted it."""
        if not self.monitor_url:
            logger.debug(f"[Events] No monitor URL configured, skipping event: {event.event_type.value}")
            return False

        try:
            status = await self._post(f"{self.monitor_url}{EVENTS_PATH}", event.to_payload())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[Events] Failed to publish event: {e}")
            return False

        if not 200 <= status < 300:
            logger.warning(f"[Events] Failed to publish event: HTTP {status}")
            return False

        logger.info(f"[Events] Published {event.event_type.value}: {event.condition or event.message or 'ok'}")
        return True

    async def publish_restart(self, detection: DetectionResult, outcome: RestartOutcome) -> bool:
        if outcome.success:
            message = f"Restart completed: {detection.condition}"
        elif outcome.refused:
            message = f"Restart skipped ({outcome.refusal.value}): {detection.condition}"
        else:
            message = f"Restart failed: {outcome.error or 'unknown error'}"

        details: dict[str, Any] = {"detectionDetails": detection.details}
        if outcome.error:
            details["error"] = outcome.error
        if outcome.refusal:
            details["refusal"] = outcome.refusal.value

        return await self.publish(
            MonitoringEvent(
                event_type=MonitoringEventType.RESTART,
                condition=detection.condition,
                severity=Severity.CRITICAL,
                scope=outcome.scope,
                affected_nodes=detection.affected_nodes,
                affected_layers=detection.affected_layers,
                success=outcome.success,
                message=message,
                details=details,
            )
        )

    async def publish_alert(
        self,
        condition: str,
        severity: Severity,
        message: str,
        affected_nodes: list[str] | None = None,
        affected_layers: list[Layer] | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        return await self.publish(
            MonitoringEvent(
                event_type=MonitoringEventType.ALERT,
                condition=condition,
                severity=severity,
                affected_nodes=affected_nodes,
                affected_layers=affected_layers,
                message=message,
                details=details,
            )
        )

    async def publish_resolved(self, condition: str, message: str) -> bool:
        return await self.publish(
            MonitoringEvent(
                event_type=MonitoringEventType.RESOLVED,
                condition=condition,
                severity=Severity.INFO,
                message=message,
            )
        )

    async def publish_lifecycle(self, started: bool) -> bool:
        return await self.publish(
            MonitoringEvent(
                event_type=MonitoringEventType.MONITORING_START if started else MonitoringEventType.MONITORING_STOP,
                severity=Severity.INFO,
                message="Monitoring service started" if started else "Monitoring service stopped",
            )
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
