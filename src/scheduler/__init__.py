"""
Automation Hub Core Module.

- entities / errors: domain model and error taxonomy
- persistence: durable state store (SQLite, WAL)
- capabilities / registry: pluggable collectors, filters, publishers, escalators
- recurrence: interval and cron schedules
- executor: the per-run item pipeline
- dispatcher: tick loop, worker pool, per-workflow exclusivity
- escalation: one open external task per escalation key
- recovery: crash recovery and retention

The AutomationService facade lives in src.scheduler.service and is imported
from there (it also depends on src.webhooks).
"""

from .entities import (
    RunOutcome,
    RunTrigger,
    EscalationStatus,
    DeliveryStatus,
    Item,
    Workflow,
    WebhookTrigger,
    Run,
    EscalationRecord,
    WebhookDelivery,
    dedup_key_for,
)
from .errors import (
    AutomationError,
    TransientError,
    PermanentError,
    StoreError,
    RunDeadlineExceeded,
    RunCancelled,
    TaskNotFoundError,
    EscalationRequired,
    AuthenticationFailure,
    InvalidOperationError,
    WorkflowNotFoundError,
    RunNotFoundError,
    DuplicateRegistrationError,
    RegistryFrozenError,
)
from .capabilities import (
    Collector,
    Filter,
    FilterAction,
    FilterDecision,
    Publisher,
    Escalator,
    PredicateFilter,
    FieldMatchFilter,
    StaticCollector,
)
from .recurrence import Recurrence, IntervalRecurrence, CronRecurrence
from .persistence import StateStore
from .registry import ANY_EVENT, CapabilityRegistry
from .escalation import EscalationTracker
from .executor import JobRunner
from .retry_controller import BackoffController
from .dispatcher import Scheduler, SchedulerState
from .recovery import RecoveryManager, RetentionPolicy

__all__ = [
    # Entities
    "RunOutcome",
    "RunTrigger",
    "EscalationStatus",
    "DeliveryStatus",
    "Item",
    "Workflow",
    "WebhookTrigger",
    "Run",
    "EscalationRecord",
    "WebhookDelivery",
    "dedup_key_for",
    # Errors
    "AutomationError",
    "TransientError",
    "PermanentError",
    "StoreError",
    "RunDeadlineExceeded",
    "RunCancelled",
    "TaskNotFoundError",
    "EscalationRequired",
    "AuthenticationFailure",
    "InvalidOperationError",
    "WorkflowNotFoundError",
    "RunNotFoundError",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    # Capabilities
    "Collector",
    "Filter",
    "FilterAction",
    "FilterDecision",
    "Publisher",
    "Escalator",
    "PredicateFilter",
    "FieldMatchFilter",
    "StaticCollector",
    # Recurrence
    "Recurrence",
    "IntervalRecurrence",
    "CronRecurrence",
    # Persistence
    "StateStore",
    # Registry
    "ANY_EVENT",
    "CapabilityRegistry",
    # Escalation
    "EscalationTracker",
    # Runner
    "JobRunner",
    # Backoff
    "BackoffController",
    # Scheduler
    "Scheduler",
    "SchedulerState",
    # Recovery
    "RecoveryManager",
    "RetentionPolicy",
]
