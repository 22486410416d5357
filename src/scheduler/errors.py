"""
Automation hub exceptions.

Error taxonomy used by the Job Runner and the Scheduler:
- TransientError: retryable by the Scheduler's backoff (network, rate limit,
  timeout, state store I/O). Aborts the current run.
- PermanentError: not retryable (malformed item, rejected by destination).
  Recorded on the Run and the item is still marked handled.
- AuthenticationFailure: webhook signature invalid. Dropped silently from the
  sender's point of view.
- EscalationRequired: not an error. A publisher raises it to route the item to
  the Escalator instead.
"""

from typing import Optional


class AutomationError(Exception):
    """Base exception for all automation hub errors."""
    pass


# =============================================================================
# Item / run level taxonomy
# =============================================================================


class TransientError(AutomationError):
    """
    Retryable failure.

    The current run is aborted; the watermark stays at the last item that was
    handled successfully and the Scheduler decides when to retry.
    """
    pass


class PermanentError(AutomationError):
    """
    Non-retryable failure for a single item.

    The item is recorded as a processing error and marked handled anyway so
    it cannot stall the workflow forever.
    """
    pass


class StoreError(TransientError):
    """Raised when the durable state store cannot complete an operation."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"State store operation '{operation}' failed: {cause}")


class RunDeadlineExceeded(TransientError):
    """Raised when a run passes its workflow's run timeout."""

    def __init__(self, workflow_id: str, timeout_seconds: float):
        self.workflow_id = workflow_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Run for workflow '{workflow_id}' exceeded its {timeout_seconds:.0f}s deadline"
        )


class RunCancelled(TransientError):
    """Raised at an item boundary when shutdown was requested."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Run for workflow '{workflow_id}' cancelled by shutdown")


class TaskNotFoundError(PermanentError):
    """Raised by an Escalator when the external task no longer exists."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"External task not found: {task_id}")


class EscalationRequired(AutomationError):
    """
    Routing signal: a human must decide about this item.

    Raised by a Publisher (or set on the Item) to send the item to the
    workflow's Escalator. The escalation itself is the completed action.
    """

    def __init__(self, escalation_key: Optional[str] = None, details: Optional[str] = None):
        self.escalation_key = escalation_key
        self.details = details
        super().__init__(details or f"Escalation required ({escalation_key})")


class AuthenticationFailure(AutomationError):
    """Raised when a webhook delivery fails signature verification."""

    def __init__(self, source_id: str, reason: str):
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Webhook authentication failed for '{source_id}': {reason}")


# =============================================================================
# Lifecycle / lookup errors
# =============================================================================


class InvalidOperationError(AutomationError):
    """
    Raised when an operation violates a hub invariant.

    Examples:
    - Sealing a Run twice
    - Opening a second escalation for a key that already has an open one
    - Registering a workflow after the hub started
    """
    pass


class WorkflowNotFoundError(AutomationError):
    """Raised when a requested workflow is not registered."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class RunNotFoundError(AutomationError):
    """Raised when a requested run does not exist."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class DuplicateRegistrationError(AutomationError):
    """Raised when a capability or workflow name is registered twice."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} '{name}' is already registered")


class RegistryFrozenError(InvalidOperationError):
    """Raised when the capability registry is mutated after start()."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Cannot register '{name}': the registry is frozen once the hub has started"
        )
