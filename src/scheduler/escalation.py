"""
Escalation Tracker.

Per-key state machine over the StateStore's escalation records:

    none     -> open       first escalation: create the external task
    open     -> open       repeat while unresolved: update the same task
    open     -> resolved   condition cleared, or the task was marked done
    open     -> superseded the task vanished; a replacement is opened
    resolved -> open       condition recurred: a NEW task is created

At most one open record exists per key. Callers for the same key serialize
on an in-process lock; the store's partial unique index backs it up.

What EscalationTracker MUST NOT do:
- Retry external calls (TransientError propagates to the Job Runner)
- Reopen closed records (closed records are audit history)
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .capabilities import Escalator
from .entities import EscalationRecord, EscalationStatus, Item, Workflow
from .errors import TaskNotFoundError
from .persistence import StateStore


logger = logging.getLogger(__name__)


def build_details(workflow: Workflow, item: Item, escalation_key: str, reason: Optional[str] = None) -> dict:
    """Build the details dict handed to Escalator.upsert."""
    title = item.title or f"[{workflow.workflow_id}] {escalation_key}"
    description = item.details or reason or ""
    if reason and item.details:
        description = f"{item.details}\n\n{reason}"

    return {
        "title": title,
        "description": description,
        "workflow_id": workflow.workflow_id,
        "escalation_key": escalation_key,
        "item_id": item.item_id,
        "payload": dict(item.payload),
        "occurrences": 1,
    }


class EscalationTracker:
    """
    Maps a logical escalation key to at most one open external task.

    Usage:
        tracker = EscalationTracker(store)
        record = tracker.escalate(escalator, "backup/nas", details, workflow_id="backups")
        tracker.resolve("backup/nas", escalator)
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._guard = threading.Lock()
        # escalation_key -> [lock, users]; an entry exists only while in use
        self._key_locks: dict[str, list] = {}

    @contextmanager
    def _lock_for(self, escalation_key: str) -> Iterator[None]:
        """Serialize transitions of one key."""
        with self._guard:
            entry = self._key_locks.setdefault(escalation_key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[escalation_key]

    # =========================================================================
    # Transitions
    # =========================================================================

    def escalate(
        self,
        escalator: Escalator,
        escalation_key: str,
        details: dict,
        workflow_id: Optional[str] = None,
    ) -> EscalationRecord:
        """
        Create or update the external task for a key.

        The open record is written before the external task is created, so a
        crash between the two leaves an open record without a task link; the
        next escalation for the key creates the task and attaches it instead
        of opening a second record.

        Args:
            escalator: Task tracker adapter of the escalating workflow
            escalation_key: Stable identity of the condition
            details: Task content (see build_details)
            workflow_id: Owning workflow, used by reconcile()

        Returns:
            The open EscalationRecord after the call

        Raises:
            TransientError: Tracker or store unavailable; nothing was lost,
                the item is retried on the next run
        """
        with self._lock_for(escalation_key):
            record = self.store.get_escalation(escalation_key)

            if record is not None and record.is_open() and record.task_id is not None:
                try:
                    done = escalator.is_resolved(record.task_id)
                except TaskNotFoundError:
                    logger.warning(
                        f"Escalation '{escalation_key}' task {record.task_id} "
                        "no longer exists; superseding record"
                    )
                    self.store.close_escalation(record.record_id, EscalationStatus.SUPERSEDED)
                    record = None
                else:
                    if done:
                        logger.info(
                            f"Escalation '{escalation_key}' task {record.task_id} was "
                            "completed externally; opening a new task"
                        )
                        self.store.close_escalation(record.record_id, EscalationStatus.RESOLVED)
                        record = None
                    else:
                        updated = self._update(escalator, record, details)
                        if updated is not None:
                            return updated
                        record = None

            if record is None or not record.is_open():
                record = self.store.open_escalation(escalation_key, None, workflow_id)

            task_id = escalator.upsert(escalation_key, details, task_id=None)
            record = self.store.touch_escalation(
                record.record_id, task_id, count_occurrence=False
            )
            logger.info(
                f"Escalation '{escalation_key}' opened (task {task_id}, "
                f"record {record.record_id})"
            )
            return record

    def _update(
        self,
        escalator: Escalator,
        record: EscalationRecord,
        details: dict,
    ) -> Optional[EscalationRecord]:
        """
        Update the existing task of an open record.

        Returns None when the task vanished; the record is then superseded
        and the caller opens a replacement.
        """
        details = {**details, "occurrences": record.occurrences + 1}
        try:
            task_id = escalator.upsert(record.escalation_key, details, task_id=record.task_id)
        except TaskNotFoundError:
            logger.warning(
                f"Escalation '{record.escalation_key}' task {record.task_id} "
                "no longer exists; superseding record"
            )
            self.store.close_escalation(record.record_id, EscalationStatus.SUPERSEDED)
            return None

        updated = self.store.touch_escalation(record.record_id, task_id)
        logger.info(
            f"Escalation '{record.escalation_key}' updated "
            f"(task {updated.task_id}, occurrences={updated.occurrences})"
        )
        return updated

    def resolve(
        self,
        escalation_key: str,
        escalator: Optional[Escalator] = None,
    ) -> Optional[EscalationRecord]:
        """
        Mark a key's open record resolved because its condition cleared.

        Closes the external task too when an escalator is given.

        Returns:
            The resolved record, or None if the key had no open record
        """
        with self._lock_for(escalation_key):
            record = self.store.get_escalation(escalation_key)
            if record is None or not record.is_open():
                logger.debug(f"Escalation '{escalation_key}' has nothing open to resolve")
                return None

            if escalator is not None and record.task_id is not None:
                try:
                    escalator.resolve(record.task_id)
                except TaskNotFoundError:
                    logger.info(
                        f"Task {record.task_id} already gone while resolving '{escalation_key}'"
                    )

            resolved = self.store.close_escalation(record.record_id, EscalationStatus.RESOLVED)
            logger.info(f"Escalation '{escalation_key}' resolved (task {record.task_id})")
            return resolved

    def reconcile(self, escalator: Escalator, workflow_id: str) -> int:
        """
        Close open records whose external task was marked done.

        Called at the end of each run of an escalating workflow.

        Returns:
            Number of records resolved
        """
        resolved = 0
        open_records = self.store.list_escalations(
            status=EscalationStatus.OPEN,
            workflow_id=workflow_id,
            limit=1000,
        )

        for record in open_records:
            if record.task_id is None:
                continue
            with self._lock_for(record.escalation_key):
                try:
                    done = escalator.is_resolved(record.task_id)
                except TaskNotFoundError:
                    done = True
                if done:
                    self.store.close_escalation(record.record_id, EscalationStatus.RESOLVED)
                    resolved += 1
                    logger.info(
                        f"Escalation '{record.escalation_key}' resolved externally "
                        f"(task {record.task_id})"
                    )

        return resolved

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, escalation_key: str) -> Optional[EscalationRecord]:
        """Get the current record for a key."""
        return self.store.get_escalation(escalation_key)

    def list_open(self, workflow_id: Optional[str] = None) -> list[EscalationRecord]:
        """List open records."""
        return self.store.list_escalations(
            status=EscalationStatus.OPEN,
            workflow_id=workflow_id,
        )
