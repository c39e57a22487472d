"""
Pydantic schemas for the refresh pipeline's in-memory records
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
import enum
from core.clock import utcnow
from models.base import PartitionStatus, TriggerSource, RunStatus


class PartitionState(BaseModel):
    """
    Watermark for one partition.

    Owned by the orchestrator. source_fingerprint is only ever set from a
    committed load, so it always describes the content readers can see.
    """
    key: str
    status: PartitionStatus = PartitionStatus.PENDING
    source_fingerprint: Optional[str] = None
    last_load_time: Optional[datetime] = None
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_at: Optional[datetime] = None
    failed_fingerprint: Optional[str] = None
    error_message: Optional[str] = None
    rows_committed: int = 0
    lease_owner: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "PartitionState":
        """Build from a PartitionStateRecord row"""
        return cls(
            key=record.partition_key,
            status=record.status,
            source_fingerprint=record.source_fingerprint,
            last_load_time=record.last_load_time,
            attempt_count=record.attempt_count or 0,
            last_attempt_at=record.last_attempt_at,
            failed_fingerprint=record.failed_fingerprint,
            error_message=record.error_message,
            rows_committed=record.rows_committed or 0,
            lease_owner=record.lease_owner,
        )


class FreshnessReason(str, enum.Enum):
    """Why a partition was (or was not) selected for refresh"""
    FORCED = "forced"
    FIRST_LOAD = "first_load"
    FINGERPRINT_CHANGED = "fingerprint_changed"
    RETRY = "retry"
    SOURCE_CHANGED = "source_changed"
    PROBE_FAILED = "probe_failed"
    UNCHANGED = "unchanged"
    BACKOFF = "backoff"
    RETRIES_EXHAUSTED = "retries_exhausted"


class FreshnessDecision(BaseModel):
    """Outcome of evaluating one partition"""
    key: str
    stale: bool
    reason: FreshnessReason
    fingerprint: Optional[str] = None
    resets_budget: bool = False


class LoadJob(BaseModel):
    """
    In-flight unit of work for one partition.

    Lives only in memory; the state store never references staging
    locations, so a restart cannot observe a dangling staging pointer.
    """
    key: str
    run_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    fingerprint: Optional[str] = None
    staging_location: Optional[str] = None
    rows_written: int = 0
    error: Optional[str] = None


class StagingResult(BaseModel):
    """Staged, not yet visible, content for one partition"""
    key: str
    staging_handle: str
    fingerprint: Optional[str] = None
    rows_read: int = 0
    rows_written: int = 0
    started_at: datetime
    finished_at: datetime


class CommitResult(BaseModel):
    """Result of repointing a partition at freshly staged content"""
    key: str
    staging_handle: str
    previous_handle: Optional[str] = None
    rows_committed: int = 0
    committed_at: datetime


class PartitionOutcome(str, enum.Enum):
    """Per-partition result within a cycle"""
    REFRESHED = "refreshed"
    FAILED = "failed"
    BUSY = "busy"


class RunRecord(BaseModel):
    """One orchestration cycle"""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    run_id: str
    table_name: str
    trigger_source: TriggerSource
    force: bool = False
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    partitions_considered: int = 0
    partitions_refreshed: int = 0
    partitions_failed: int = 0
    partitions_skipped: int = 0
    error_message: Optional[str] = None
    run_metadata: Optional[Dict[str, Any]] = None


class TransitionEvent(BaseModel):
    """A single partition state transition"""
    model_config = ConfigDict(from_attributes=True)

    run_id: Optional[str] = None
    partition_key: str
    from_status: Optional[PartitionStatus] = None
    to_status: PartitionStatus
    attempt_count: int = 0
    detail: Optional[str] = None
    occurred_at: datetime
