"""
Scheduler router for scheduler control APIs.

Endpoints under /scheduler/* for start, stop, status and manual triggers.
"""

from fastapi import APIRouter, HTTPException
from starlette.concurrency import run_in_threadpool

from src.scheduler.errors import InvalidOperationError, WorkflowNotFoundError
from ..schemas.scheduler import (
    SchedulerStartRequest,
    SchedulerStartResponse,
    SchedulerStopRequest,
    SchedulerStopResponse,
    SchedulerStatusResponse,
    TriggerRequest,
    TriggerResponse,
)
from .._hub_state import get_hub_service


router = APIRouter()


@router.post("/start", response_model=SchedulerStartResponse)
async def start_scheduler(request: SchedulerStartRequest = SchedulerStartRequest()):
    """
    Start the scheduler tick loop.

    Idempotent: If scheduler is already running, returns success with message.
    """
    service = get_hub_service()

    if service.is_running:
        return SchedulerStartResponse(
            success=True,
            message="Scheduler is already running",
            recovery_stats=None,
        )

    try:
        recovery_stats = service.start(run_recovery=request.run_recovery)
    except InvalidOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return SchedulerStartResponse(
        success=True,
        message="Scheduler started successfully",
        recovery_stats=recovery_stats if recovery_stats else None,
    )


@router.post("/stop", response_model=SchedulerStopResponse)
async def stop_scheduler(request: SchedulerStopRequest = SchedulerStopRequest()):
    """
    Stop the scheduler gracefully.

    In-flight runs stop at their next item boundary within the grace period.
    Idempotent: If scheduler is already stopped, returns success.
    """
    service = get_hub_service()

    if not service.is_running:
        return SchedulerStopResponse(
            success=True,
            message="Scheduler is already stopped",
        )

    abandoned = await run_in_threadpool(service.stop, request.grace_period)

    return SchedulerStopResponse(
        success=True,
        message="Scheduler stopped successfully",
        abandoned_runs=abandoned,
    )


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status():
    """
    Get scheduler status.

    Returns the scheduler state and, per workflow, its next fire time,
    last outcome, backoff state and whether a run is in flight.
    """
    service = get_hub_service()
    return SchedulerStatusResponse(**service.status())


@router.post("/workflows/{workflow_id}/trigger", response_model=TriggerResponse)
async def trigger_workflow(workflow_id: str, request: TriggerRequest = TriggerRequest()):
    """
    Fire a scheduled workflow now.

    Rejected with 409 when the scheduler is stopped, the workflow is already
    in flight, or the workflow only runs from webhooks.
    """
    service = get_hub_service()

    try:
        run = await run_in_threadpool(service.trigger, workflow_id, request.wait)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if run is None:
        return TriggerResponse(
            workflow_id=workflow_id,
            accepted=True,
            message="Run dispatched",
        )

    return TriggerResponse(
        workflow_id=workflow_id,
        accepted=True,
        message="Run completed",
        run_id=run.run_id,
        outcome=run.outcome.value if run.outcome else None,
    )
