"""
Recurrence rules for scheduled workflows.

- IntervalRecurrence: fires every N seconds measured from the previous run's
  completion, not aligned to the wall clock, so a late run never causes a
  burst of catch-up ticks.
- CronRecurrence: fires at the next wall-clock instant matching a 5-field
  crontab expression, evaluated with APScheduler's CronTrigger.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger


class Recurrence(ABC):
    """Computes a workflow's next fire time."""

    @abstractmethod
    def next_fire(self, now: datetime, last_completed: Optional[datetime] = None) -> datetime:
        """
        Compute the next fire time.

        Args:
            now: Current time (aware, UTC)
            last_completed: When the previous run finished, if any

        Returns:
            Aware UTC datetime of the next tick
        """
        ...


class IntervalRecurrence(Recurrence):
    """Fixed interval from last completion."""

    def __init__(self, seconds: float, run_immediately: bool = True):
        if seconds <= 0:
            raise ValueError(f"Interval must be positive, got {seconds}")
        self.seconds = float(seconds)
        self.run_immediately = run_immediately

    def next_fire(self, now: datetime, last_completed: Optional[datetime] = None) -> datetime:
        if last_completed is None:
            if self.run_immediately:
                return now
            return now + timedelta(seconds=self.seconds)
        return last_completed + timedelta(seconds=self.seconds)

    def __repr__(self) -> str:
        return f"IntervalRecurrence(seconds={self.seconds:g})"


class CronRecurrence(Recurrence):
    """Next matching wall-clock instant of a crontab expression."""

    def __init__(self, expression: str, timezone_name: str = "UTC"):
        parts = expression.split()
        if len(parts) != 5:
            raise ValueError(f"Invalid cron expression: {expression}")

        self.expression = expression
        self.timezone_name = timezone_name
        self._trigger = CronTrigger.from_crontab(
            expression, timezone=ZoneInfo(timezone_name)
        )

    def next_fire(self, now: datetime, last_completed: Optional[datetime] = None) -> datetime:
        # Strictly after now, so a tick that fires exactly on the boundary
        # does not schedule itself again for the same instant.
        fire = self._trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
        if fire is None:
            raise ValueError(f"Cron expression '{self.expression}' never fires again")
        return fire.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"CronRecurrence({self.expression!r}, tz={self.timezone_name})"
