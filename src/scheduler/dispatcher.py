"""
Scheduler for the automation hub.

- Owns the registered workflow set and their next fire times
- Tick loop thread fires due workflows into a bounded worker pool
- One in-flight lock per workflow: a due tick for a busy workflow is
  skipped (logged, no Run), never queued
- Webhook-triggered runs share the same lock but wait for it instead of
  skipping, since a pushed event has no next tick to recover it
- `error` outcomes push the next fire out through the BackoffController

What Scheduler MUST NOT do:
- Execute pipeline steps itself (JobRunner does)
- Touch watermarks or dedup keys
"""

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional, TypeVar

from .entities import Run, RunOutcome, RunTrigger, Workflow, to_iso, utc_now
from .errors import InvalidOperationError, TransientError, WorkflowNotFoundError
from .executor import JobRunner
from .retry_controller import BackoffController


logger = logging.getLogger(__name__)

T = TypeVar("T")


# Default scheduler configuration
DEFAULT_POOL_SIZE = 4
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_MAINTENANCE_INTERVAL_SECONDS = 3600.0


class SchedulerState(str, Enum):
    """Scheduler lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


@dataclass
class WorkflowSchedule:
    """In-memory scheduling state of one recurring workflow."""

    workflow: Workflow
    next_fire: datetime
    last_completed: Optional[datetime] = None
    backing_off: bool = False


class Scheduler:
    """
    Fires due workflows with bounded concurrency and overlap prevention.

    Key behaviors:
    1. Every poll_interval, find workflows whose next_fire has passed
    2. Try the workflow's in-flight lock without blocking
       - held: skip the tick, log it, recompute next_fire
       - free: submit a JobRunner invocation to the pool
    3. On completion (still holding the lock), compute next_fire:
       - error: BackoffController delay
       - otherwise: recurrence from completion time
    4. Release the lock

    The pool size bounds concurrent external-API pressure across all
    workflows, independent of how many are registered.
    """

    def __init__(
        self,
        workflows: Mapping[str, Workflow],
        runner: JobRunner,
        backoff: Optional[BackoffController] = None,
        pool_size: int = DEFAULT_POOL_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        maintenance: Optional[Callable[[], Any]] = None,
        maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL_SECONDS,
    ):
        """
        Initialize Scheduler.

        Args:
            workflows: workflow_id -> Workflow (frozen registry view)
            runner: JobRunner executing the pipelines
            backoff: BackoffController for error outcomes
            pool_size: Maximum concurrently running workflows
            poll_interval: Seconds between due-checks
            clock: Current aware UTC time, injectable for testing
            maintenance: Periodic housekeeping callable (retention pruning)
            maintenance_interval: Seconds between maintenance calls
        """
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")

        self.workflows = dict(workflows)
        self.runner = runner
        self.backoff = backoff or BackoffController()
        self.pool_size = pool_size
        self.poll_interval = poll_interval
        self.maintenance_interval = maintenance_interval
        self._clock = clock
        self._maintenance = maintenance

        self._state = SchedulerState.STOPPED
        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()

        self._locks = {workflow_id: threading.Lock() for workflow_id in self.workflows}
        self._state_lock = threading.Lock()
        self._schedules: dict[str, WorkflowSchedule] = {}
        self._futures: set[Future] = set()
        self._last_outcomes: dict[str, RunOutcome] = {}
        self._next_maintenance: Optional[datetime] = None

    @property
    def state(self) -> SchedulerState:
        """Get current scheduler state."""
        return self._state

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._state == SchedulerState.RUNNING

    def is_in_flight(self, workflow_id: str) -> bool:
        """Check whether a run for the workflow is currently in flight."""
        return self._lock(workflow_id).locked()

    def _lock(self, workflow_id: str) -> threading.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            raise WorkflowNotFoundError(workflow_id)
        return lock

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, blocking: bool = False) -> None:
        """
        Start the tick loop and the worker pool.

        Args:
            blocking: If True, run the tick loop in the current thread
        """
        if self._state != SchedulerState.STOPPED:
            raise InvalidOperationError(f"Cannot start scheduler in {self._state.value} state")

        self._stop_event.clear()
        self._cancel_event.clear()
        self._pool = ThreadPoolExecutor(
            max_workers=self.pool_size,
            thread_name_prefix="hub-worker",
        )

        now = self._clock()
        with self._state_lock:
            for workflow_id, workflow in self.workflows.items():
                if workflow.recurrence is None:
                    continue
                previous = self._schedules.get(workflow_id)
                last_completed = previous.last_completed if previous else None
                self._schedules[workflow_id] = WorkflowSchedule(
                    workflow=workflow,
                    next_fire=workflow.recurrence.next_fire(now, last_completed),
                    last_completed=last_completed,
                )
        self._next_maintenance = now

        self._state = SchedulerState.RUNNING
        logger.info(
            f"Scheduler started: {len(self._schedules)} scheduled workflow(s), "
            f"pool_size={self.pool_size}"
        )

        if blocking:
            self._tick_loop()
        else:
            self._thread = threading.Thread(
                target=self._tick_loop,
                name="hub-scheduler",
                daemon=True,
            )
            self._thread.start()

    def stop(self, grace_period: float = 30.0) -> int:
        """
        Stop issuing dispatches and shut the pool down.

        In-flight runs are asked to stop at their next item boundary (the
        safe checkpoint) and given up to grace_period seconds. Runs still
        going after that are abandoned: their current item has not been
        committed, so the next start resumes from the last committed item.

        Args:
            grace_period: Maximum seconds to wait for in-flight runs

        Returns:
            Number of runs still in flight when the grace period ran out
        """
        if self._state == SchedulerState.STOPPED:
            return 0

        logger.info("Stopping scheduler...")
        self._state = SchedulerState.STOPPING
        self._stop_event.set()
        self._cancel_event.set()

        if self._thread is not None:
            self._thread.join(timeout=max(self.poll_interval * 2, 1.0))
            if self._thread.is_alive():
                logger.warning("Scheduler tick thread did not stop within timeout")
            self._thread = None

        with self._state_lock:
            pending = set(self._futures)

        _, not_done = wait(pending, timeout=grace_period)
        if not_done:
            logger.warning(
                f"Abandoning {len(not_done)} run(s) still in flight after "
                f"{grace_period:.0f}s grace period"
            )

        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None

        self._state = SchedulerState.STOPPED
        logger.info("Scheduler stopped")
        return len(not_done)

    def _tick_loop(self) -> None:
        """Main tick loop."""
        logger.info("Scheduler loop started")

        while not self._stop_event.is_set():
            try:
                self.run_due()
                self._run_maintenance_if_due()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
            self._stop_event.wait(self.poll_interval)

        logger.info("Scheduler loop ended")

    def _run_maintenance_if_due(self) -> None:
        if self._maintenance is None or self._next_maintenance is None:
            return
        now = self._clock()
        if now < self._next_maintenance:
            return
        self._next_maintenance = now + timedelta(seconds=self.maintenance_interval)
        self._maintenance()

    # =========================================================================
    # Dispatch
    # =========================================================================

    def run_due(self, now: Optional[datetime] = None) -> list[Future]:
        """
        Dispatch every scheduled workflow whose next fire time has passed.

        Returns:
            Futures of the runs dispatched by this call
        """
        if self._state != SchedulerState.RUNNING:
            return []

        now = now or self._clock()
        with self._state_lock:
            due = [
                workflow_id
                for workflow_id, schedule in self._schedules.items()
                if schedule.next_fire <= now
            ]

        dispatched = []
        for workflow_id in due:
            future = self._dispatch(workflow_id, RunTrigger.SCHEDULE, now)
            if future is not None:
                dispatched.append(future)
        return dispatched

    def tick(self, workflow_id: str, trigger: RunTrigger = RunTrigger.MANUAL) -> Optional[Future]:
        """
        Fire one workflow now, outside its recurrence.

        Returns:
            Future resolving to the sealed Run, or None if the tick was
            skipped because the workflow is in flight

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InvalidOperationError: Scheduler is not running
        """
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if workflow.collector is None:
            raise InvalidOperationError(
                f"Workflow '{workflow_id}' has no collector and only runs from webhooks"
            )
        return self._dispatch(workflow_id, trigger, self._clock())

    def _dispatch(self, workflow_id: str, trigger: RunTrigger, now: datetime) -> Optional[Future]:
        if self._state != SchedulerState.RUNNING or self._pool is None:
            raise InvalidOperationError("Scheduler is not running")

        workflow = self.workflows[workflow_id]
        lock = self._lock(workflow_id)

        if not lock.acquire(blocking=False):
            logger.info(
                f"Skipping {trigger.value} tick for workflow '{workflow_id}': "
                "previous run still in flight"
            )
            self._reschedule_provisional(workflow_id, now)
            return None

        self._reschedule_provisional(workflow_id, now)

        try:
            future = self._pool.submit(self._execute, workflow, trigger, lock)
        except RuntimeError:
            lock.release()
            raise InvalidOperationError("Scheduler is shutting down")

        self._release_if_cancelled(future, lock)
        self._track(future)
        logger.debug(f"Dispatched workflow '{workflow_id}' (trigger={trigger.value})")
        return future

    def _reschedule_provisional(self, workflow_id: str, now: datetime) -> None:
        """
        Move a due workflow's next fire forward.

        The completing run replaces this with the real value; it only keeps
        the tick loop from re-firing the same due instant.
        """
        with self._state_lock:
            schedule = self._schedules.get(workflow_id)
            if schedule is not None and schedule.next_fire <= now:
                schedule.next_fire = schedule.workflow.recurrence.next_fire(now, now)

    def _execute(self, workflow: Workflow, trigger: RunTrigger, lock: threading.Lock) -> Run:
        """Worker body for scheduled and manual runs. Releases the lock."""
        outcome = RunOutcome.ERROR
        try:
            run = self.runner.run(workflow, trigger, cancel_event=self._cancel_event)
            outcome = run.outcome
            return run
        except Exception as e:
            logger.error(
                f"Run for workflow '{workflow.workflow_id}' could not be recorded: {e}",
                exc_info=True,
            )
            raise
        finally:
            try:
                self._on_run_completed(workflow, outcome)
            finally:
                lock.release()

    def _on_run_completed(self, workflow: Workflow, outcome: RunOutcome) -> None:
        now = self._clock()
        backoff_until = self.backoff.record_outcome(workflow.workflow_id, outcome, now)

        with self._state_lock:
            self._last_outcomes[workflow.workflow_id] = outcome
            schedule = self._schedules.get(workflow.workflow_id)
            if schedule is None:
                return
            schedule.last_completed = now
            schedule.backing_off = backoff_until is not None
            if backoff_until is not None:
                schedule.next_fire = backoff_until
            else:
                schedule.next_fire = workflow.recurrence.next_fire(now, now)

        logger.debug(
            f"Workflow '{workflow.workflow_id}' next fire at {to_iso(schedule.next_fire)}"
        )

    def _track(self, future: Future) -> None:
        with self._state_lock:
            self._futures.add(future)

        def _untrack(done: Future) -> None:
            with self._state_lock:
                self._futures.discard(done)

        future.add_done_callback(_untrack)

    @staticmethod
    def _release_if_cancelled(future: Future, lock: threading.Lock) -> None:
        """
        Release the in-flight lock of a run cancelled while still queued.

        stop() cancels queued work, and a cancelled future never runs the
        body that would have released the lock.
        """
        def _release(done: Future) -> None:
            if done.cancelled():
                lock.release()

        future.add_done_callback(_release)

    # =========================================================================
    # Webhook support
    # =========================================================================

    def run_exclusive(
        self,
        workflow_id: str,
        fn: Callable[[threading.Event], T],
        wait_timeout: float = 30.0,
    ) -> T:
        """
        Run fn on the worker pool under the workflow's in-flight lock.

        Used for webhook-triggered runs. Unlike a scheduled tick this waits
        for the lock, up to wait_timeout, because the event would otherwise
        be lost.

        A Run returned by fn is recorded as the workflow's last outcome. It
        does not move the recurrence or the backoff: the sender owns retry
        timing for pushed events through the 503 it receives.

        Args:
            workflow_id: Workflow whose exclusivity fn needs
            fn: Called with the scheduler's cancel event
            wait_timeout: Maximum seconds to wait for an in-flight run

        Returns:
            fn's return value

        Raises:
            WorkflowNotFoundError: Unknown workflow
            TransientError: Scheduler not running or shutting down, or lock
                wait timed out
        """
        lock = self._lock(workflow_id)
        if self._state != SchedulerState.RUNNING or self._pool is None:
            raise TransientError("Scheduler is not running")

        if not lock.acquire(timeout=wait_timeout):
            raise TransientError(
                f"Workflow '{workflow_id}' stayed in flight for {wait_timeout:.0f}s"
            )

        def _locked_call() -> T:
            try:
                return fn(self._cancel_event)
            finally:
                lock.release()

        try:
            future = self._pool.submit(_locked_call)
        except RuntimeError:
            lock.release()
            raise TransientError("Scheduler is shutting down")

        self._release_if_cancelled(future, lock)
        self._track(future)
        try:
            result = future.result()
        except CancelledError:
            raise TransientError("Scheduler is shutting down")

        if isinstance(result, Run):
            with self._state_lock:
                self._last_outcomes[workflow_id] = result.outcome
        return result

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> dict:
        """Get scheduler status for the API."""
        with self._state_lock:
            schedules = dict(self._schedules)
            last_outcomes = dict(self._last_outcomes)
            in_flight_runs = len(self._futures)

        workflows = []
        for workflow_id, workflow in sorted(self.workflows.items()):
            schedule = schedules.get(workflow_id)
            workflows.append({
                "workflow_id": workflow_id,
                "recurrence": repr(workflow.recurrence) if workflow.recurrence else None,
                "webhook_trigger": (
                    f"{workflow.webhook_trigger.source_id}:{workflow.webhook_trigger.event_type}"
                    if workflow.webhook_trigger else None
                ),
                "in_flight": self.is_in_flight(workflow_id),
                "next_fire": to_iso(schedule.next_fire) if schedule else None,
                "last_outcome": (
                    last_outcomes[workflow_id].value
                    if workflow_id in last_outcomes else None
                ),
                "consecutive_failures": self.backoff.failures(workflow_id),
                "backing_off": schedule.backing_off if schedule else False,
            })

        return {
            "state": self._state.value,
            "pool_size": self.pool_size,
            "in_flight_runs": in_flight_runs,
            "workflows": workflows,
        }
