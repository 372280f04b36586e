"""Opt-in alert rules. Alerts are published as events and never trigger restarts."""

from metagraph_watchdog.alerts.evaluator import AlertEvaluationResult, AlertEvaluator

__all__ = ["AlertEvaluationResult", "AlertEvaluator"]
