"""
Run history router.

GET /runs and GET /runs/{run_id}.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.scheduler.errors import RunNotFoundError, WorkflowNotFoundError
from ..schemas.runs import RunListResponse, RunResponse
from .._hub_state import get_hub_service


router = APIRouter()


@router.get("", response_model=RunListResponse)
async def list_runs(
    workflow_id: Optional[str] = Query(default=None, description="Filter by workflow"),
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum runs to return"),
):
    """List recent runs, newest first."""
    service = get_hub_service()

    try:
        runs = service.list_runs(workflow_id=workflow_id, limit=limit)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return RunListResponse(
        runs=[RunResponse.from_run(run) for run in runs],
        total=len(runs),
    )


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Get a single run."""
    service = get_hub_service()

    try:
        run = service.get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return RunResponse.from_run(run)
