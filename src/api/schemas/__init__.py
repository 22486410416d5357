"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .runs import RunResponse, RunListResponse
from .escalations import EscalationResponse, EscalationListResponse
from .scheduler import (
    SchedulerStartRequest,
    SchedulerStartResponse,
    SchedulerStopRequest,
    SchedulerStopResponse,
    SchedulerStatusResponse,
    WorkflowStatus,
    TriggerRequest,
    TriggerResponse,
)
from .webhooks import WebhookAckResponse

__all__ = [
    "RunResponse",
    "RunListResponse",
    "EscalationResponse",
    "EscalationListResponse",
    "SchedulerStartRequest",
    "SchedulerStartResponse",
    "SchedulerStopRequest",
    "SchedulerStopResponse",
    "SchedulerStatusResponse",
    "WorkflowStatus",
    "TriggerRequest",
    "TriggerResponse",
    "WebhookAckResponse",
]
