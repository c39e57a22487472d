"""
Partition endpoints: state, transition history, live rows, operator reset
and removal
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
import logging

from api.dependencies import get_orchestrator, get_state_store, get_storage
from core.exceptions import PartitionBusyError
from ingestion.orchestrator import RefreshOrchestrator
from ingestion.state_store import PartitionStateStore
from ingestion.storage.base import StorageEngine
from schemas.api import (
    PartitionEventsResponse,
    PartitionListResponse,
    PartitionRemovedResponse,
    PartitionResetResponse,
    PartitionRowsResponse,
)
from schemas.partition import PartitionState

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/partitions", tags=["Partitions"])


async def _require_state(store: PartitionStateStore, key: str) -> PartitionState:
    state = await store.get(key)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Partition '{key}' is not known")
    return state


@router.get("", response_model=PartitionListResponse)
async def list_partitions(store: PartitionStateStore = Depends(get_state_store)):
    """All partitions ever seen for the target table"""
    states = await store.list_states()
    return PartitionListResponse(table_name=store.table_name, total=len(states), partitions=states)


@router.get("/{key}", response_model=PartitionState)
async def get_partition(key: str, store: PartitionStateStore = Depends(get_state_store)):
    return await _require_state(store, key)


@router.get("/{key}/events", response_model=PartitionEventsResponse)
async def get_partition_events(
    key: str,
    limit: int = Query(100, ge=1, le=1000, description="Most recent events to return"),
    store: PartitionStateStore = Depends(get_state_store)
):
    await _require_state(store, key)
    events = await store.list_events(key, limit=limit)
    return PartitionEventsResponse(key=key, events=events)


@router.get("/{key}/rows", response_model=PartitionRowsResponse)
async def get_partition_rows(
    key: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    storage: StorageEngine = Depends(get_storage)
):
    """
    Currently visible rows of a partition.

    Reads go through the partition pointer, so a concurrent refresh is
    observed either entirely before or entirely after its commit.
    """
    segment = await storage.live_segment(key)
    rows = await storage.read_partition(key, offset=offset, limit=limit)
    return PartitionRowsResponse(
        key=key,
        total_rows=segment.row_count if segment else 0,
        offset=offset,
        limit=limit,
        rows=rows
    )


@router.post("/{key}/reset", response_model=PartitionResetResponse)
async def reset_partition(
    request: Request,
    key: str,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator)
):
    """Clear the retry budget of a partition (e.g. after fixing its source)"""
    try:
        state = await orchestrator.reset_partition(key)
    except PartitionBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Partition '{key}' is not known")

    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] Retry budget of partition {key} reset by operator")
    return PartitionResetResponse(key=key, status=state.status, attempt_count=state.attempt_count)


@router.delete("/{key}", response_model=PartitionRemovedResponse)
async def remove_partition(
    request: Request,
    key: str,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator)
):
    """
    Remove a partition (e.g. a dropped year): its rows, segments and state.

    A key the enumerator still lists is loaded again on the next cycle.
    """
    try:
        removed = await orchestrator.remove_partition(key)
    except PartitionBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Partition '{key}' is not known")

    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] Partition {key} removed by operator")
    return PartitionRemovedResponse(key=key)
