"""
Run log endpoints and manual trigger
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.dependencies import get_scheduler, get_state_store
from ingestion.scheduler import RefreshScheduler
from ingestion.state_store import PartitionStateStore
from models.base import TriggerSource
from schemas.api import RunListResponse, RunTriggerRequest, RunTriggerResponse
from schemas.partition import RunRecord

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/runs", tags=["Runs"])


@router.get("", response_model=RunListResponse)
async def list_runs(
    limit: int = Query(20, ge=1, le=500, description="Most recent runs to return"),
    store: PartitionStateStore = Depends(get_state_store)
):
    return RunListResponse(runs=await store.list_runs(limit=limit))


@router.get("/{run_id}", response_model=RunRecord)
async def get_run(run_id: str, store: PartitionStateStore = Depends(get_state_store)):
    run = await store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run


@router.post("", response_model=RunTriggerResponse, status_code=202)
async def trigger_run(
    request: Request,
    body: Optional[RunTriggerRequest] = None,
    scheduler: RefreshScheduler = Depends(get_scheduler)
):
    """
    Request a manual cycle.

    The cycle runs in the background; while one is running, requests are
    merged into a single follow-up cycle.
    """
    body = body or RunTriggerRequest()
    had_pending = scheduler.has_pending
    pending = scheduler.request_run(TriggerSource.MANUAL, force=body.force)

    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] Manual refresh requested (force: {body.force})")

    return RunTriggerResponse(
        trigger_source=pending.trigger,
        force=pending.force,
        coalesced=had_pending,
        cycle_running=scheduler.cycle_running,
        requested_at=pending.requested_at
    )
