"""Restart orchestration."""

from metagraph_watchdog.restart.history import RestartHistory
from metagraph_watchdog.restart.orchestrator import RestartOrchestrator

__all__ = ["RestartHistory", "RestartOrchestrator"]
