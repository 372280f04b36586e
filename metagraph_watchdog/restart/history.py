"""Restart history shared by every restart scope."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from metagraph_watchdog.models import RestartEvent


class RestartHistory:
    """Append-only record of restart attempts.

    Feeds the cooldown and rate-limit checks. Entries are never mutated.
    """

    def __init__(self, events: Optional[list[RestartEvent]] = None):
        self._events: list[RestartEvent] = list(events or [])

    def append(self, event: RestartEvent) -> None:
        self._events.append(event)

    def last(self) -> RestartEvent | None:
        return self._events[-1] if self._events else None

    def recent_count(self, now: datetime, window: timedelta = timedelta(hours=1)) -> int:
        """Number of attempts strictly newer than ``now - window``."""
        cutoff = now - window
        return sum(1 for e in self._events if e.timestamp > cutoff)

    def events(self) -> list[RestartEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)
