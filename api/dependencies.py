"""
FastAPI dependencies resolving the refresh runtime built at startup
"""

from fastapi import HTTPException, Request

from ingestion.factory import RefreshRuntime
from ingestion.orchestrator import RefreshOrchestrator
from ingestion.scheduler import RefreshScheduler
from ingestion.state_store import PartitionStateStore
from ingestion.storage.base import StorageEngine


def get_runtime(request: Request) -> RefreshRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Refresh runtime is not initialized")
    return runtime


def get_state_store(request: Request) -> PartitionStateStore:
    return get_runtime(request).state_store


def get_storage(request: Request) -> StorageEngine:
    return get_runtime(request).storage


def get_scheduler(request: Request) -> RefreshScheduler:
    return get_runtime(request).scheduler


def get_orchestrator(request: Request) -> RefreshOrchestrator:
    return get_runtime(request).orchestrator
