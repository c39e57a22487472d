"""
Pydantic schemas for data validation and serialization.

Schemas:
    partition: In-memory records of the refresh pipeline (PartitionState,
        FreshnessDecision, LoadJob, StagingResult, CommitResult, RunRecord,
        TransitionEvent)
    api: API endpoint request/response schemas

Usage:
    from schemas.partition import PartitionState, RunRecord
    from schemas.api import HealthCheckResponse, RunTriggerRequest

Example:
    state = PartitionState(key="2021")
    assert state.status == PartitionStatus.PENDING
    assert state.attempt_count == 0
"""

from schemas.partition import (
    CommitResult,
    FreshnessDecision,
    FreshnessReason,
    LoadJob,
    PartitionState,
    RunRecord,
    StagingResult,
    TransitionEvent,
)
from schemas.api import HealthCheckResponse, RunTriggerRequest, RunTriggerResponse

__all__ = [
    "PartitionState",
    "FreshnessDecision",
    "FreshnessReason",
    "LoadJob",
    "StagingResult",
    "CommitResult",
    "RunRecord",
    "TransitionEvent",
    "HealthCheckResponse",
    "RunTriggerRequest",
    "RunTriggerResponse",
]
