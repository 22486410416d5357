"""
Escalation router.

GET /escalations lists escalation records (open tasks and their history).
"""

from typing import Optional

from fastapi import APIRouter, Query

from src.scheduler.entities import EscalationStatus
from ..schemas.escalations import EscalationListResponse, EscalationResponse
from .._hub_state import get_hub_service


router = APIRouter()


@router.get("", response_model=EscalationListResponse)
async def list_escalations(
    status: Optional[EscalationStatus] = Query(default=None, description="Filter by status"),
    workflow_id: Optional[str] = Query(default=None, description="Filter by workflow"),
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum records to return"),
):
    """List escalation records, most recently updated first."""
    service = get_hub_service()
    records = service.list_escalations(status=status, workflow_id=workflow_id, limit=limit)

    return EscalationListResponse(
        escalations=[EscalationResponse.from_record(record) for record in records],
        total=len(records),
    )
