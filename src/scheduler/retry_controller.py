"""
Backoff Controller for the Scheduler.

- Decides when a workflow whose last run ended in `error` fires again
- Exponential backoff with jitter, bounded by a maximum delay
- `success` / `partial` reset the workflow to its nominal recurrence

What BackoffController MUST NOT do:
- Execute runs
- Retry inside a run (the Job Runner never retries)
- Persist anything (backoff state is in-memory; a restart starts fresh)
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from .entities import RunOutcome


logger = logging.getLogger(__name__)


# Default backoff configuration
DEFAULT_BASE_DELAY_SECONDS = 30.0
DEFAULT_MAX_DELAY_SECONDS = 3600.0


class BackoffController:
    """
    Tracks consecutive failures per workflow and computes retry delays.

    Backoff calculation:
        ceiling = min(max_delay, base_delay * 2 ^ (failures - 1))
        delay   = ceiling / 2 + uniform(0, ceiling / 2)
        Example with 30s base: ~15-30s -> ~30-60s -> ~60-120s ... capped at max

    Half of the ceiling is jitter, so failing workflows spread out instead
    of hitting a recovering upstream in lockstep, while the delay never
    collapses to zero.
    """

    def __init__(
        self,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        rng: Optional[Callable[[float, float], float]] = None,
    ):
        """
        Initialize BackoffController.

        Args:
            base_delay_seconds: Ceiling of the first retry delay
            max_delay_seconds: Upper bound of any retry delay
            rng: uniform(a, b) source, injectable for testing
        """
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._uniform = rng or random.uniform
        self._failures: dict[str, int] = {}

    def calculate_delay(self, failures: int) -> float:
        """
        Calculate the jittered delay after N consecutive failures.

        Args:
            failures: Consecutive error outcomes, >= 1

        Returns:
            Delay in seconds, within (0, max_delay_seconds]
        """
        exponent = min(max(failures, 1) - 1, 32)
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** exponent))
        half = ceiling / 2
        return half + self._uniform(0, half)

    def record_outcome(
        self,
        workflow_id: str,
        outcome: RunOutcome,
        now: datetime,
    ) -> Optional[datetime]:
        """
        Record a run outcome.

        Returns:
            The backoff fire time after an `error` outcome, or None when the
            workflow should follow its normal recurrence
        """
        if outcome != RunOutcome.ERROR:
            if self._failures.pop(workflow_id, 0):
                logger.info(f"Workflow '{workflow_id}' recovered; backoff reset")
            return None

        failures = self._failures.get(workflow_id, 0) + 1
        self._failures[workflow_id] = failures
        delay = self.calculate_delay(failures)

        logger.warning(
            f"Workflow '{workflow_id}' failed {failures} time(s) in a row; "
            f"backing off {delay:.1f}s"
        )
        return now + timedelta(seconds=delay)

    def failures(self, workflow_id: str) -> int:
        """Get the consecutive failure count of a workflow."""
        return self._failures.get(workflow_id, 0)

    def reset(self, workflow_id: str) -> None:
        """Forget a workflow's failure streak."""
        self._failures.pop(workflow_id, None)
