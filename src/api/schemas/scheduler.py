"""
Scheduler API schemas.

Supports /scheduler/* control endpoints.
"""

from typing import List, Optional
from pydantic import BaseModel, Field


class SchedulerStartRequest(BaseModel):
    """Request to start the scheduler."""

    run_recovery: bool = Field(
        default=True,
        description="Whether to run crash recovery on startup"
    )


class SchedulerStartResponse(BaseModel):
    """Response from scheduler start."""

    success: bool
    message: str
    recovery_stats: Optional[dict] = Field(
        default=None,
        description="Recovery statistics if recovery was run"
    )


class SchedulerStopRequest(BaseModel):
    """Request to stop the scheduler."""

    grace_period: float = Field(
        default=30.0,
        ge=0.0,
        le=300.0,
        description="Maximum wait for in-flight runs to reach an item boundary (seconds)"
    )


class SchedulerStopResponse(BaseModel):
    """Response from scheduler stop."""

    success: bool
    message: str
    abandoned_runs: int = Field(default=0, description="Runs still in flight after the grace period")


class WorkflowStatus(BaseModel):
    """Schedule state of one workflow."""

    workflow_id: str
    recurrence: Optional[str] = Field(default=None, description="Recurrence description")
    webhook_trigger: Optional[str] = Field(default=None, description="Bound source:event_type")
    in_flight: bool = Field(default=False, description="Whether a run is currently executing")
    next_fire: Optional[str] = Field(default=None, description="Next scheduled fire (ISO format)")
    last_outcome: Optional[str] = Field(default=None, description="Outcome of the last run, scheduled or webhook")
    consecutive_failures: int = Field(default=0, description="Consecutive error outcomes")
    backing_off: bool = Field(default=False, description="Whether next_fire comes from error backoff")


class SchedulerStatusResponse(BaseModel):
    """Response from scheduler status endpoint."""

    state: str = Field(..., description="Scheduler state (STOPPED/RUNNING/STOPPING)")
    pool_size: int = Field(..., description="Maximum concurrently running workflows")
    in_flight_runs: int = Field(default=0, description="Runs currently executing")
    workflows: List[WorkflowStatus] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list, description="Registered webhook sources")


class TriggerRequest(BaseModel):
    """Request to fire a workflow now."""

    wait: bool = Field(
        default=False,
        description="Block until the run is sealed and return it"
    )


class TriggerResponse(BaseModel):
    """Response from a manual trigger."""

    workflow_id: str
    accepted: bool
    message: str
    run_id: Optional[str] = Field(default=None, description="Sealed run ID when wait=true")
    outcome: Optional[str] = Field(default=None, description="Run outcome when wait=true")
