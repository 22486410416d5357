"""
Job Runner for the automation hub.

Executes one workflow's pipeline for one scheduled tick or one webhook event:

    read watermark -> collect -> per item: dedup -> filters
        -> publish | escalate | resolve -> commit (DedupKey + watermark)
    -> seal Run

Error handling per item:
- TransientError (and timeouts/connection errors): abort the run, outcome
  `error`. The failing item is not committed, so the watermark stays at the
  last successful item and the next run resumes there.
- PermanentError (and any unexpected exception from a collaborator): record
  the failure, commit the item anyway, continue. Outcome `partial`.
- Unstorable or incomparable position: checked before the terminal step.
  The item fails without side effects and its DedupKey is committed with
  the watermark left where it was.
- EscalationRequired: route the item to the workflow's Escalator.

What JobRunner MUST NOT do:
- Retry (the Scheduler's BackoffController owns retry timing)
- Hold workflow exclusivity (the Scheduler does)
"""

import logging
import threading
import time
from typing import Callable, Iterable, Optional

import httpx

from .capabilities import FilterAction
from .entities import (
    Item,
    Run,
    RunOutcome,
    RunTrigger,
    Workflow,
    dedup_key_for,
)
from .errors import (
    EscalationRequired,
    InvalidOperationError,
    PermanentError,
    RunCancelled,
    RunDeadlineExceeded,
    TransientError,
)
from .escalation import EscalationTracker, build_details
from .persistence import StateStore, check_position


logger = logging.getLogger(__name__)


# Exceptions treated as transient even when adapters do not translate them
TRANSIENT_EXCEPTIONS = (
    TransientError,
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
)

# Failures listed in a Run's error summary before truncation
MAX_SUMMARY_ENTRIES = 10


class ItemResult:
    """Per-item result labels."""

    PUBLISHED = "published"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    FAILED = "failed"


class JobRunner:
    """
    Runs one pipeline instance and seals exactly one Run.

    Stateless between runs: everything it needs to resume lives in the
    StateStore.
    """

    def __init__(
        self,
        store: StateStore,
        tracker: EscalationTracker,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize JobRunner.

        Args:
            store: StateStore for watermarks, dedup keys and run history
            tracker: EscalationTracker for escalating items
            clock: Monotonic clock, injectable for deadline tests
        """
        self.store = store
        self.tracker = tracker
        self._clock = clock

    def run(
        self,
        workflow: Workflow,
        trigger: RunTrigger = RunTrigger.SCHEDULE,
        items: Optional[Iterable[Item]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Run:
        """
        Execute the workflow's pipeline and return the sealed Run.

        Args:
            workflow: The workflow to run
            trigger: What caused this run
            items: Items to process instead of the collector's output
                (webhook-triggered runs)
            cancel_event: Set by the Scheduler on shutdown; checked at every
                item boundary

        Returns:
            The sealed Run

        Raises:
            StoreError: The Run itself could not be created or sealed
        """
        run = self.store.create_run(Run.create(workflow.workflow_id, trigger))
        deadline = self._clock() + workflow.run_timeout
        failures: list[str] = []
        abort: Optional[str] = None

        logger.info(
            f"Run {run.run_id} started for workflow '{workflow.workflow_id}' "
            f"(trigger={trigger.value})"
        )

        try:
            source = self._open_source(workflow, items)
            iterator = iter(source)

            while True:
                self._check_checkpoint(workflow, deadline, cancel_event)

                try:
                    item = next(iterator)
                except StopIteration:
                    break
                except TRANSIENT_EXCEPTIONS:
                    raise
                except PermanentError as e:
                    abort = f"Collector failed permanently: {e}"
                    break
                except Exception as e:
                    logger.exception(
                        f"Collector for workflow '{workflow.workflow_id}' raised unexpectedly"
                    )
                    abort = f"Collector error: {type(e).__name__}: {e}"
                    break

                self._process_item(workflow, run, item, failures)

        except TRANSIENT_EXCEPTIONS as e:
            abort = f"{type(e).__name__}: {e}"
            logger.warning(
                f"Run {run.run_id} for workflow '{workflow.workflow_id}' aborted: {abort}"
            )
        except PermanentError as e:
            abort = f"Collector failed permanently: {e}"
        except Exception as e:
            logger.exception(
                f"Run {run.run_id} for workflow '{workflow.workflow_id}' failed unexpectedly"
            )
            abort = f"{type(e).__name__}: {e}"

        if abort is None and workflow.escalator is not None:
            self._reconcile(workflow)

        run.outcome = self._decide_outcome(abort, failures)
        run.error_summary = self._summarize(abort, failures)
        self.store.seal_run(run)

        logger.info(
            f"Run {run.run_id} for workflow '{workflow.workflow_id}' sealed: "
            f"outcome={run.outcome.value}, processed={run.items_processed}, "
            f"escalated={run.items_escalated}, skipped={run.items_skipped}, "
            f"failed={run.items_failed}"
        )
        return run

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    def _open_source(self, workflow: Workflow, items: Optional[Iterable[Item]]) -> Iterable[Item]:
        if items is not None:
            return items
        if workflow.collector is None:
            raise PermanentError(f"Workflow '{workflow.workflow_id}' has no collector")

        cursor = self.store.get_watermark(workflow.workflow_id)
        return workflow.collector.fetch_since(cursor)

    def _check_checkpoint(
        self,
        workflow: Workflow,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Safe checkpoint between items: nothing is half-committed here."""
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled(workflow.workflow_id)
        if self._clock() >= deadline:
            raise RunDeadlineExceeded(workflow.workflow_id, workflow.run_timeout)

    def _process_item(
        self,
        workflow: Workflow,
        run: Run,
        item: Item,
        failures: list[str],
    ) -> Optional[str]:
        """
        Handle one item end to end.

        Returns:
            The ItemResult label, or None when the item was already handled

        Raises:
            TransientError: Abort the run; the item was not committed
        """
        dedup_key = dedup_key_for(workflow.workflow_id, item.item_id)
        if self.store.touch_handled(dedup_key):
            run.items_skipped += 1
            logger.debug(f"Item {item.item_id} already handled, skipping")
            return None

        position = item.position
        try:
            self._check_position(workflow, item)
            result = self._act(workflow, item)
        except TRANSIENT_EXCEPTIONS:
            raise
        except InvalidOperationError as e:
            # Never handed to the terminal step; record the key, keep the watermark
            position = None
            result = ItemResult.FAILED
            failures.append(f"{item.item_id}: {e}")
            logger.warning(f"Item {item.item_id} has an unusable position: {e}")
        except PermanentError as e:
            result = ItemResult.FAILED
            failures.append(f"{item.item_id}: {e}")
            logger.warning(f"Item {item.item_id} failed permanently: {e}")
        except Exception as e:
            result = ItemResult.FAILED
            failures.append(f"{item.item_id}: {type(e).__name__}: {e}")
            logger.exception(f"Unexpected error processing item {item.item_id}")

        # Only reached when the terminal step completed or failed permanently
        self.store.commit_item(workflow.workflow_id, dedup_key, position)

        run.items_processed += 1
        if result == ItemResult.ESCALATED:
            run.items_escalated += 1
        elif result == ItemResult.FAILED:
            run.items_failed += 1
        return result

    def _check_position(self, workflow: Workflow, item: Item) -> None:
        """Reject positions the commit step could not store, before any side effect."""
        if item.position is None:
            return
        check_position(self.store.get_watermark(workflow.workflow_id), item.position)

    def _act(self, workflow: Workflow, item: Item) -> str:
        current = item
        for item_filter in workflow.filters:
            decision = item_filter.evaluate(current)
            if decision.action == FilterAction.REJECT:
                logger.debug(
                    f"Item {item.item_id} rejected by {item_filter.name}: {decision.reason}"
                )
                return ItemResult.REJECTED
            if decision.action == FilterAction.TRANSFORM and decision.item is not None:
                current = decision.item

        escalation_key = workflow.escalation_key_for(current)

        if current.cleared:
            self.tracker.resolve(escalation_key, workflow.escalator)
            return ItemResult.RESOLVED

        if workflow.escalates_by_default:
            self._escalate(workflow, current, escalation_key)
            return ItemResult.ESCALATED

        try:
            workflow.publisher.emit(current)
        except EscalationRequired as e:
            if workflow.escalator is None:
                raise PermanentError(
                    f"Escalation required but workflow '{workflow.workflow_id}' "
                    f"has no escalator: {e}"
                )
            self._escalate(workflow, current, e.escalation_key or escalation_key, e.details)
            return ItemResult.ESCALATED

        return ItemResult.PUBLISHED

    def _escalate(
        self,
        workflow: Workflow,
        item: Item,
        escalation_key: str,
        reason: Optional[str] = None,
    ) -> None:
        details = build_details(workflow, item, escalation_key, reason)
        self.tracker.escalate(
            workflow.escalator,
            escalation_key,
            details,
            workflow_id=workflow.workflow_id,
        )

    def _reconcile(self, workflow: Workflow) -> None:
        """Close escalations whose tasks were completed externally."""
        try:
            resolved = self.tracker.reconcile(workflow.escalator, workflow.workflow_id)
        except TRANSIENT_EXCEPTIONS as e:
            logger.warning(
                f"Escalation reconcile for workflow '{workflow.workflow_id}' "
                f"deferred to next run: {e}"
            )
            return
        if resolved:
            logger.info(
                f"Workflow '{workflow.workflow_id}': {resolved} escalation(s) resolved externally"
            )

    # =========================================================================
    # Sealing
    # =========================================================================

    @staticmethod
    def _decide_outcome(abort: Optional[str], failures: list[str]) -> RunOutcome:
        if abort is not None:
            return RunOutcome.ERROR
        if failures:
            return RunOutcome.PARTIAL
        return RunOutcome.SUCCESS

    @staticmethod
    def _summarize(abort: Optional[str], failures: list[str]) -> Optional[str]:
        lines = []
        if abort is not None:
            lines.append(f"Aborted: {abort}")
        lines.extend(failures[:MAX_SUMMARY_ENTRIES])
        if len(failures) > MAX_SUMMARY_ENTRIES:
            lines.append(f"... and {len(failures) - MAX_SUMMARY_ENTRIES} more")
        return "\n".join(lines) if lines else None
