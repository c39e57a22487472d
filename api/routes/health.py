"""
Health check endpoint with database and partition status
"""

from collections import Counter
import logging

from fastapi import APIRouter, Depends

from api.dependencies import get_scheduler, get_state_store
from core.exceptions import StateStoreError
from ingestion.scheduler import RefreshScheduler
from ingestion.state_store import PartitionStateStore
from models.base import PartitionStatus
from schemas.api import HealthCheckResponse, SchedulerStatus

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    store: PartitionStateStore = Depends(get_state_store),
    scheduler: RefreshScheduler = Depends(get_scheduler)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Partition counts by status
    - Last finished cycle and scheduler state
    """
    db_connected = False
    by_status: Counter = Counter()
    last_run = None

    try:
        states = await store.list_states()
        db_connected = True
        by_status.update(state.status.value for state in states)

        runs = await store.list_runs(limit=1)
        last_run = runs[0] if runs else None
    except StateStoreError as e:
        logger.error(f"Health check could not read the state store: {e.message}")

    return HealthCheckResponse(
        database_connected=db_connected,
        table_name=store.table_name,
        partitions_by_status=dict(by_status),
        total_partitions=sum(by_status.values()),
        failed_partitions=by_status.get(PartitionStatus.FAILED.value, 0),
        last_run=last_run,
        scheduler=SchedulerStatus(**scheduler.status())
    )
