"""Clock abstraction.

WallClock: real wall-clock time (service, CLI)
SimClock: deterministic time for tests and replays

The engine never calls datetime.now() directly; it stamps records
through the injected clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class IClock(Protocol):
    """Clock interface used by all time-dependent code."""

    def now(self) -> datetime:
        """Current time as timezone-aware UTC datetime."""
        ...


class WallClock:
    """Real wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SimClock:
    """Simulated clock that advances a fixed step on every read.

    Stepping on read keeps ``created_at`` ordering strict between records
    created back to back.
    """

    def __init__(
        self,
        start: datetime | None = None,
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self._time = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._step = step

    def now(self) -> datetime:
        current = self._time
        self._time = current + self._step
        return current

    def set_time(self, t: datetime) -> None:
        """Move time. Must be monotonically increasing."""
        if t < self._time:
            raise ValueError(
                f"SimClock cannot go backwards: {t} < {self._time}"
            )
        self._time = t
