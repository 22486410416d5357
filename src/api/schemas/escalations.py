"""
Escalation API schemas.
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from src.scheduler.entities import EscalationRecord


class EscalationResponse(BaseModel):
    """Response representing an EscalationRecord."""

    record_id: str
    escalation_key: str = Field(..., description="Stable identity of the escalated condition")
    status: str = Field(..., description="open/resolved/superseded")
    task_id: Optional[str] = Field(default=None, description="External task identifier")
    workflow_id: Optional[str] = None
    occurrences: int = Field(default=1, description="Times the condition was escalated")
    created_at: str
    updated_at: str
    resolved_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: EscalationRecord) -> "EscalationResponse":
        return cls(
            record_id=record.record_id,
            escalation_key=record.escalation_key,
            status=record.status.value,
            task_id=record.task_id,
            workflow_id=record.workflow_id,
            occurrences=record.occurrences,
            created_at=record.created_at,
            updated_at=record.updated_at,
            resolved_at=record.resolved_at,
        )


class EscalationListResponse(BaseModel):
    """Response for escalation list endpoint."""

    escalations: List[EscalationResponse] = Field(default_factory=list)
    total: int = Field(..., description="Number of records returned")
