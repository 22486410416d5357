"""
Run history API schemas.
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from src.scheduler.entities import Run


class RunResponse(BaseModel):
    """Response representing a Run."""

    run_id: str = Field(..., description="Unique run identifier")
    workflow_id: str = Field(..., description="Workflow that ran")
    trigger: str = Field(..., description="What caused the run (schedule/webhook/manual)")
    started_at: str = Field(..., description="Start timestamp (ISO format)")
    finished_at: Optional[str] = Field(default=None, description="Seal timestamp")
    outcome: Optional[str] = Field(default=None, description="success/partial/error; null while in flight")
    items_processed: int = 0
    items_escalated: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    error_summary: Optional[str] = None

    @classmethod
    def from_run(cls, run: Run) -> "RunResponse":
        return cls(
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            trigger=run.trigger.value,
            started_at=run.started_at,
            finished_at=run.finished_at,
            outcome=run.outcome.value if run.outcome else None,
            items_processed=run.items_processed,
            items_escalated=run.items_escalated,
            items_skipped=run.items_skipped,
            items_failed=run.items_failed,
            error_summary=run.error_summary,
        )


class RunListResponse(BaseModel):
    """Response for run list endpoint."""

    runs: List[RunResponse] = Field(default_factory=list)
    total: int = Field(..., description="Number of runs returned")
