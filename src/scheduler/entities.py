"""
Automation Hub Domain Entities.

- Workflow: named, statically registered automation unit
- Item: one upstream observation flowing through a workflow pipeline
- Run: historical record of one pipeline execution
- EscalationRecord: link between a logical escalation key and an external task
- WebhookDelivery: one inbound push, identified independently of its items

Status values are lower-case strings so they can be shown in run history and
API responses unchanged.
"""

import hashlib
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from .capabilities import Collector, Escalator, Filter, Publisher
    from .recurrence import Recurrence


DEFAULT_RUN_TIMEOUT_SECONDS = 300.0


class RunOutcome(str, Enum):
    """
    Run outcome values.

    - SUCCESS: every item was handled
    - PARTIAL: some items failed permanently (recorded and skipped)
    - ERROR: the pipeline aborted (transient failure, collector failure)
    """

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class RunTrigger(str, Enum):
    """What caused a run to be dispatched."""

    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class EscalationStatus(str, Enum):
    """
    Escalation record status values.

    - OPEN: an actionable external task exists for the key
    - RESOLVED: the condition cleared or the task was marked done externally
    - SUPERSEDED: the external task vanished and a replacement was opened
    """

    OPEN = "open"
    RESOLVED = "resolved"
    SUPERSEDED = "superseded"


class DeliveryStatus(str, Enum):
    """Inbound webhook delivery status values."""

    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Format a datetime as a sortable ISO string.

    All timestamps in the store use this fixed-width format so that string
    comparison in SQL matches chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_iso(value: str) -> datetime:
    """Parse a to_iso() string back into an aware UTC datetime."""
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def now_iso() -> str:
    """Get current time as ISO format string."""
    return to_iso(utc_now())


def dedup_key_for(workflow_id: str, item_id: str) -> str:
    """Derive the content-addressed DedupKey for an item of a workflow."""
    digest = hashlib.sha256(f"{workflow_id}\0{item_id}".encode("utf-8"))
    return digest.hexdigest()


@dataclass(frozen=True)
class Item:
    """
    One upstream observation.

    position is the item's contribution to the workflow watermark (a
    timestamp, an integer id, an opaque but ordered cursor) and may be None
    for sources without a natural order. escalation_key identifies the
    business condition behind the item; cleared=True means that condition
    has gone away.
    """

    item_id: str
    payload: dict = field(default_factory=dict)
    position: Any = None
    title: Optional[str] = None
    details: Optional[str] = None
    escalation_key: Optional[str] = None
    cleared: bool = False

    def with_payload(self, **changes: Any) -> "Item":
        """Return a copy with payload keys replaced."""
        return replace(self, payload={**self.payload, **changes})


@dataclass(frozen=True)
class WebhookTrigger:
    """Binds a workflow to a webhook source and event type."""

    source_id: str
    event_type: str


@dataclass(frozen=True)
class Workflow:
    """
    Named, statically registered automation unit.

    Immutable after the hub starts. A workflow needs a recurrence, a webhook
    trigger, or both (webhook runs then share the scheduled runs'
    exclusivity), and at least one terminal step.
    """

    workflow_id: str
    collector: Optional["Collector"] = None
    filters: tuple = ()
    publisher: Optional["Publisher"] = None
    escalator: Optional["Escalator"] = None
    recurrence: Optional["Recurrence"] = None
    webhook_trigger: Optional[WebhookTrigger] = None
    run_timeout: float = DEFAULT_RUN_TIMEOUT_SECONDS
    escalation_key: Optional[Callable[[Item], str]] = None
    description: Optional[str] = None

    def __post_init__(self):
        if not self.workflow_id:
            raise ValueError("Workflow requires a non-empty workflow_id")
        if self.recurrence is None and self.webhook_trigger is None:
            raise ValueError(
                f"Workflow '{self.workflow_id}' needs a recurrence or a webhook trigger"
            )
        if self.publisher is None and self.escalator is None:
            raise ValueError(
                f"Workflow '{self.workflow_id}' needs a publisher or an escalator"
            )
        if self.recurrence is not None and self.collector is None:
            raise ValueError(
                f"Scheduled workflow '{self.workflow_id}' needs a collector"
            )
        # Accept lists from callers but keep the dataclass hashable
        object.__setattr__(self, "filters", tuple(self.filters))

    @property
    def escalates_by_default(self) -> bool:
        """True when the terminal step is the Escalator rather than a Publisher."""
        return self.publisher is None

    def escalation_key_for(self, item: Item) -> str:
        """Derive the stable escalation key for an item."""
        if item.escalation_key:
            return item.escalation_key
        if self.escalation_key is not None:
            return self.escalation_key(item)
        return f"{self.workflow_id}/{item.item_id}"


@dataclass
class Run:
    """
    Historical record of one pipeline execution.

    Created at dispatch, sealed exactly once at completion. Sealed runs are
    never mutated; the store rejects a second seal.
    """

    run_id: str
    workflow_id: str
    trigger: RunTrigger
    started_at: str
    finished_at: Optional[str] = None
    outcome: Optional[RunOutcome] = None
    items_processed: int = 0
    items_escalated: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    error_summary: Optional[str] = None

    @classmethod
    def create(cls, workflow_id: str, trigger: RunTrigger) -> "Run":
        """Create a new unsealed Run with generated ID."""
        return cls(
            run_id=generate_uuid(),
            workflow_id=workflow_id,
            trigger=trigger,
            started_at=now_iso(),
        )

    def is_sealed(self) -> bool:
        """Check if the run has been sealed."""
        return self.outcome is not None


@dataclass
class EscalationRecord:
    """
    Maps a logical escalation key to at most one open external task.

    Closed records (resolved, superseded) are kept for audit and never
    reopened; a recurrence creates a new record.
    """

    record_id: str
    escalation_key: str
    status: EscalationStatus
    task_id: Optional[str] = None
    workflow_id: Optional[str] = None
    occurrences: int = 1
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    resolved_at: Optional[str] = None

    @classmethod
    def open(
        cls,
        escalation_key: str,
        task_id: Optional[str],
        workflow_id: Optional[str] = None,
    ) -> "EscalationRecord":
        """Create a new OPEN record with generated ID."""
        return cls(
            record_id=generate_uuid(),
            escalation_key=escalation_key,
            status=EscalationStatus.OPEN,
            task_id=task_id,
            workflow_id=workflow_id,
        )

    def is_open(self) -> bool:
        return self.status == EscalationStatus.OPEN


@dataclass
class WebhookDelivery:
    """One inbound push, recorded before any processing."""

    delivery_id: str
    source_id: str
    received_at: str
    status: DeliveryStatus = DeliveryStatus.RECEIVED
