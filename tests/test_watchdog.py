"""
Tests for the Watchdog control loop.

The health reader, event publisher, orchestrator and notifier are mocks;
detectors run for real against snapshots from the conftest factory.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from metagraph_watchdog import metrics
from metagraph_watchdog.alerts import AlertEvaluationResult
from metagraph_watchdog.alerts.cluster_alerts import ClusterAlert
from metagraph_watchdog.conditions import StallTracker
from metagraph_watchdog.coordination.events import Severity
from metagraph_watchdog.models import (
    Layer,
    RefusalReason,
    RestartOutcome,
    RestartScope,
)
from metagraph_watchdog.restart import RestartHistory
from metagraph_watchdog.watchdog import Watchdog

OTHER_HASH = "bbbbbbbbbbbb"


def outcome_for(detection, **fields):
    values = {
        "attempted": True,
        "success": True,
        "scope": detection.restart_scope,
        "condition": detection.condition,
    }
    values.update(fields)
    return RestartOutcome(**values)


@pytest.fixture
def events():
    publisher = MagicMock()
    publisher.publish_restart = AsyncMock(return_value=True)
    publisher.publish_alert = AsyncMock(return_value=True)
    publisher.publish_resolved = AsyncMock(return_value=True)
    publisher.publish_lifecycle = AsyncMock(return_value=True)
    publisher.close = AsyncMock()
    return publisher


@pytest.fixture
def reader(build_snapshot):
    health_reader = MagicMock()
    health_reader.get_health_snapshot = AsyncMock(return_value=build_snapshot())
    health_reader.close = AsyncMock()
    return health_reader


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.execute = AsyncMock(side_effect=lambda detection: outcome_for(detection))
    return orch


@pytest.fixture
def notifier():
    return AsyncMock(return_value=True)


@pytest.fixture
def make_watchdog(config, reader, remote, events, orchestrator, notifier, fake_clock):
    def _make(**overrides):
        values = {
            "health_reader": reader,
            "remote": remote,
            "events": events,
            "orchestrator": orchestrator,
            "tracker": StallTracker(clock=fake_clock.time),
            "history": RestartHistory(),
            "notifier": notifier,
        }
        values.update(overrides)
        return Watchdog(values.pop("config", config), **values)

    return _make


# =============================================================================
# Single cycle
# =============================================================================


class TestRunHealthCheck:
    """Tests for one health-check cycle."""

    @pytest.mark.asyncio
    async def test_healthy_cycle(self, make_watchdog, orchestrator, events):
        watchdog = make_watchdog()

        report = await watchdog.run_health_check()

        assert report.healthy is True
        assert [r.condition for r in report.results] == [
            "ForkedCluster", "SnapshotsStopped", "UnhealthyNodes",
        ]
        orchestrator.execute.assert_not_awaited()
        events.publish_restart.assert_not_awaited()
        assert watchdog.cycles == 1

    @pytest.mark.asyncio
    async def test_stall_gauge_set_by_cycle(self, make_watchdog, fake_clock):
        watchdog = make_watchdog()

        with patch.object(metrics, "SNAPSHOT_STALL_SECONDS") as gauge:
            await watchdog.run_health_check()
            fake_clock.advance(120)
            await watchdog.run_health_check()

        assert gauge.set.call_args_list == [call(0.0), call(120.0)]

    @pytest.mark.asyncio
    async def test_first_detection_wins(self, make_watchdog, reader, build_snapshot, unreachable, orchestrator):
        reader.get_health_snapshot.return_value = build_snapshot({
            ("10.0.0.3", Layer.ML0): {"cluster_hash": OTHER_HASH},
            ("10.0.0.2", Layer.DL1): unreachable,
        })
        watchdog = make_watchdog()

        report = await watchdog.run_health_check()

        assert report.detection.condition == "ForkedCluster"
        assert len(report.results) == 1
        orchestrator.execute.assert_awaited_once_with(report.detection)

    @pytest.mark.asyncio
    async def test_restart_published(self, make_watchdog, reader, build_snapshot, unreachable, events, notifier):
        reader.get_health_snapshot.return_value = build_snapshot({("10.0.0.2", Layer.DL1): unreachable})
        watchdog = make_watchdog()

        report = await watchdog.run_health_check()

        assert report.detection.restart_scope == RestartScope.INDIVIDUAL_NODE
        events.publish_restart.assert_awaited_once_with(report.detection, report.outcome)
        notifier.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_detector_error_isolated(self, make_watchdog):
        watchdog = make_watchdog()

        def broken(snapshot, config):
            raise RuntimeError("detector bug")

        watchdog.detectors = [("Broken", broken), *watchdog.detectors]

        report = await watchdog.run_health_check()

        assert report.detector_errors == ["Broken"]
        assert len(report.results) == 3
        assert report.healthy is True

    @pytest.mark.asyncio
    async def test_rate_limited_notifies(self, make_watchdog, reader, build_snapshot, unreachable, orchestrator, notifier):
        reader.get_health_snapshot.return_value = build_snapshot({("10.0.0.2", Layer.DL1): unreachable})
        orchestrator.execute.side_effect = lambda d: outcome_for(
            d, attempted=False, success=False, refusal=RefusalReason.RATE_LIMITED
        )
        watchdog = make_watchdog()

        await watchdog.run_health_check()

        message = notifier.await_args.args[1]
        assert "Restart loop detected for UnhealthyNodes" in message
        assert "Manual intervention required" in message

    @pytest.mark.asyncio
    async def test_cooldown_does_not_notify(self, make_watchdog, reader, build_snapshot, unreachable, orchestrator, notifier, events):
        reader.get_health_snapshot.return_value = build_snapshot({("10.0.0.2", Layer.DL1): unreachable})
        orchestrator.execute.side_effect = lambda d: outcome_for(
            d, attempted=False, success=False, refusal=RefusalReason.COOLDOWN
        )
        watchdog = make_watchdog()

        await watchdog.run_health_check()

        notifier.assert_not_awaited()
        events.publish_restart.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_restart_notifies(self, make_watchdog, reader, build_snapshot, unreachable, orchestrator, notifier):
        reader.get_health_snapshot.return_value = build_snapshot({("10.0.0.2", Layer.DL1): unreachable})
        orchestrator.execute.side_effect = lambda d: outcome_for(d, success=False, error="[SSH_ERROR] boom")
        watchdog = make_watchdog()

        await watchdog.run_health_check()

        assert "failed: [SSH_ERROR] boom" in notifier.await_args.args[1]

    @pytest.mark.asyncio
    async def test_resolved_after_recovery(self, make_watchdog, reader, build_snapshot, unreachable, events):
        watchdog = make_watchdog()
        reader.get_health_snapshot.return_value = build_snapshot({("10.0.0.2", Layer.DL1): unreachable})
        await watchdog.run_health_check()
        assert watchdog.get_status()["active_conditions"] == ["UnhealthyNodes"]

        reader.get_health_snapshot.return_value = build_snapshot()
        await watchdog.run_health_check()

        events.publish_resolved.assert_awaited_once()
        assert events.publish_resolved.await_args.args[0] == "UnhealthyNodes"
        assert watchdog.get_status()["active_conditions"] == []

    @pytest.mark.asyncio
    async def test_alerts_published(self, make_watchdog, events, notifier):
        alert = ClusterAlert(
            node_ip="10.0.0.1", rule_id="gl0-peer-drop", severity=Severity.CRITICAL, message="GL0 isolated"
        )
        evaluator = MagicMock()
        evaluator.evaluate = AsyncMock(return_value=AlertEvaluationResult(cluster_alerts=[alert]))
        watchdog = make_watchdog(alert_evaluator=evaluator)

        report = await watchdog.run_health_check()

        assert report.alerts.cluster_alerts == [alert]
        events.publish_alert.assert_awaited_once()
        assert events.publish_alert.await_args.kwargs["condition"] == "gl0-peer-drop"
        assert "GL0 isolated" in notifier.await_args.args[1]

    @pytest.mark.asyncio
    async def test_alert_failure_does_not_break_cycle(self, make_watchdog):
        evaluator = MagicMock()
        evaluator.evaluate = AsyncMock(side_effect=RuntimeError("ssh down"))
        watchdog = make_watchdog(alert_evaluator=evaluator)

        report = await watchdog.run_health_check()

        assert report.alerts is None
        assert report.healthy is True

    def test_alert_evaluator_created_when_enabled(self, make_config, make_watchdog):
        watchdog = make_watchdog(config=make_config(alerts_enabled=True))

        assert watchdog.alert_evaluator is not None
        assert watchdog.get_status()["alerts_enabled"] is True


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for run_once and run_forever."""

    @pytest.mark.asyncio
    async def test_run_once(self, make_watchdog, events, reader):
        watchdog = make_watchdog()

        report = await watchdog.run_once()

        assert report.healthy is True
        events.publish_lifecycle.assert_awaited_once_with(True)
        reader.close.assert_awaited_once()
        events.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, make_watchdog, reader, build_snapshot, events):
        stop = asyncio.Event()
        snapshot = build_snapshot()

        async def read_and_stop():
            stop.set()
            return snapshot

        reader.get_health_snapshot.side_effect = read_and_stop
        watchdog = make_watchdog()

        await watchdog.run_forever(stop)

        assert watchdog.cycles == 1
        assert events.publish_lifecycle.await_args_list == [call(True), call(False)]
        reader.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_forever_survives_cycle_error(self, make_config, make_watchdog, reader, build_snapshot):
        stop = asyncio.Event()
        snapshot = build_snapshot()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("reader exploded")
            stop.set()
            return snapshot

        reader.get_health_snapshot.side_effect = flaky
        watchdog = make_watchdog(config=make_config(health_check_interval_seconds=0.01))

        await watchdog.run_forever(stop)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_get_status(self, make_watchdog, reader, build_snapshot, unreachable):
        reader.get_health_snapshot.return_value = build_snapshot({("10.0.0.2", Layer.DL1): unreachable})
        history = RestartHistory()
        watchdog = make_watchdog(history=history)

        await watchdog.run_health_check()
        status = watchdog.get_status()

        assert status["cycles"] == 1
        assert status["restarts_total"] == 0
        assert status["last_restart"] is None
        assert status["dry_run"] is False
